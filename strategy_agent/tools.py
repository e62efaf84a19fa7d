"""strategy_agent/tools.py

Default strategy tools registered at process start.

These are deliberately lightweight stand-ins for the real strategy, code
generation, backtesting and market-data services: prices come from a seeded
random walk so results are deterministic per symbol/timeframe.  Each tool
takes the merged payload (planner arguments + run context) and returns a
result dict; missing required inputs raise ``ValueError``.
"""

from __future__ import annotations

# Standard Library
import logging
import random
import re
import uuid
import zlib
from datetime import datetime, timezone
from typing import Any

# Local Modules
from strategy_agent.registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

_RISK_PROFILES: dict[str, dict[str, float]] = {
    "conservative": {
        "stop_loss": 0.02,
        "take_profit": 0.04,
        "position_size": 0.1,
    },
    "moderate": {
        "stop_loss": 0.03,
        "take_profit": 0.06,
        "position_size": 0.2,
    },
    "aggressive": {
        "stop_loss": 0.05,
        "take_profit": 0.10,
        "position_size": 0.35,
    },
}

_TIMEFRAME_BARS_PER_DAY: dict[str, int] = {
    "1m": 1440,
    "5m": 288,
    "15m": 96,
    "30m": 48,
    "1h": 24,
    "4h": 6,
    "1d": 1,
}


# ---------------------------------------------------------------------------
# Synthetic market helpers
# ---------------------------------------------------------------------------


def _seed_for(*parts: str) -> int:
    return zlib.crc32("|".join(parts).encode("utf-8"))


def synthetic_prices(
    symbol: str, timeframe: str, bars: int = 200
) -> list[float]:
    """Deterministic random-walk close prices for ``symbol``/``timeframe``.

    Args:
        symbol: Trading pair, e.g. ``"BTC/USDT"``.
        timeframe: Candle granularity, e.g. ``"1h"``.
        bars: Number of closes to generate.

    Returns:
        List of ``bars`` positive closes.
    """
    rng = random.Random(_seed_for(symbol.upper(), timeframe))
    price = 50.0 + rng.random() * 50_000.0
    closes: list[float] = []
    for _ in range(bars):
        price *= 1.0 + rng.gauss(0.0002, 0.012)
        closes.append(round(max(price, 0.0001), 4))
    return closes


def _sma(values: list[float], window: int) -> float:
    window = max(1, min(window, len(values)))
    return sum(values[-window:]) / window


def _rsi(values: list[float], period: int = 14) -> float:
    if len(values) <= period:
        return 50.0
    gains = losses = 0.0
    for prev, cur in zip(values[-period - 1 : -1], values[-period:]):
        delta = cur - prev
        if delta >= 0:
            gains += delta
        else:
            losses -= delta
    if losses == 0:
        return 100.0
    rs = gains / losses
    return round(100.0 - 100.0 / (1.0 + rs), 2)


def simulate_strategy(plan: dict[str, Any], bars: int = 200) -> dict[str, Any]:
    """Run a crude long-only simulation of ``plan`` on synthetic prices.

    Entries fire when the close crosses above a moving average whose length
    grows with the number of entry conditions (more conditions, fewer
    signals).  Positions exit at the plan's stop-loss or take-profit.

    Args:
        plan: Normalised strategy plan.
        bars: Number of synthetic candles to simulate.

    Returns:
        Backtest summary dict (``total_trades``, ``win_rate``, ...).
    """
    symbol = str(plan.get("symbol") or "BTC/USDT")
    timeframe = str(plan.get("timeframe") or "1h")
    risk = plan.get("risk") or {}
    params = plan.get("params") or {}
    stop_loss = float(risk.get("stop_loss") or 0.02)
    take_profit = float(risk.get("take_profit") or 0.04)
    fee = float(params.get("fee") or 0.001)
    initial_cash = float(params.get("initial_cash") or 10_000)
    window = 10 + 5 * len(plan.get("entry") or [])

    closes = synthetic_prices(symbol, timeframe, bars)
    equity = initial_cash
    peak = equity
    max_drawdown = 0.0
    trades: list[float] = []
    entry_price: float | None = None

    for i in range(window + 1, len(closes)):
        price = closes[i]
        if entry_price is None:
            prev_avg = _sma(closes[: i - 1], window)
            avg = _sma(closes[:i], window)
            if closes[i - 1] <= prev_avg and price > avg:
                entry_price = price
            continue
        change = price / entry_price - 1.0
        if change <= -stop_loss or change >= take_profit:
            pnl = change - 2 * fee
            equity *= 1.0 + pnl
            trades.append(pnl)
            entry_price = None
            peak = max(peak, equity)
            max_drawdown = max(max_drawdown, (peak - equity) / peak)

    wins = [t for t in trades if t > 0]
    mean = variance = win_rate = 0.0
    if trades:
        mean = sum(trades) / len(trades)
        variance = sum((t - mean) ** 2 for t in trades) / len(trades)
        win_rate = round(100.0 * len(wins) / len(trades), 2)
    sharpe = mean / variance**0.5 if variance > 0 else 0.0

    return {
        "symbol": symbol,
        "timeframe": timeframe,
        "bars": bars,
        "total_trades": len(trades),
        "win_rate": win_rate,
        "total_return": round(100.0 * (equity / initial_cash - 1.0), 2),
        "max_drawdown": round(-100.0 * max_drawdown, 2),
        "sharpe_ratio": round(sharpe, 2),
        "initial_capital": initial_cash,
        "final_equity": round(equity, 2),
    }


def quick_backtest(
    plan: dict[str, Any], artifact: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Fast, low-fidelity check used right after code generation."""
    target = dict(plan)
    if artifact:
        target.setdefault("symbol", artifact.get("asset"))
        target.setdefault("timeframe", artifact.get("timeframe"))
    return simulate_strategy(target, bars=120)


# ---------------------------------------------------------------------------
# Tool implementations
# ---------------------------------------------------------------------------


def create_dsl(payload: dict[str, Any]) -> dict[str, Any]:
    """Turn a natural-language strategy idea into a structured plan."""
    description = str(payload.get("description") or "").strip()
    if not description:
        return {
            "status": "needs_clarification",
            "message": (
                "Could you describe the strategy you have in mind? "
                "For example the asset, the timeframe and what should "
                "trigger an entry."
            ),
        }

    symbol = str(payload.get("symbol") or "BTC/USDT").upper()
    timeframe = str(payload.get("timeframe") or "1h")
    risk_level = str(payload.get("risk_level") or "moderate").lower()
    profile = _RISK_PROFILES.get(risk_level, _RISK_PROFILES["moderate"])

    entry: list[str] = ["rsi_14 < 35"]
    exit_rules: list[str] = ["rsi_14 > 65"]
    analysis = payload.get("market_analysis") or {}
    trend = (analysis.get("summary") or {}).get("trend")
    if trend == "bullish":
        entry.append("close > sma_50")
    elif trend == "bearish":
        entry.append("close > sma_20")
        exit_rules.append("close < sma_20")

    previous = payload.get("previous_backtest") or {}
    if previous and int(previous.get("total_trades", 0) or 0) < 5:
        # Too few trades last time: keep a single, looser entry condition.
        entry = ["rsi_14 < 40"]

    base = re.sub(r"\W+", "_", symbol.split("/")[0].lower()).strip("_")
    base = base or "asset"
    return {
        "status": "success",
        "dsl": {
            "strategy_name": f"{base}_{timeframe}_{risk_level}",
            "description": description,
            "symbol": symbol,
            "timeframe": timeframe,
            "entry": entry,
            "exit": exit_rules,
            "risk": {
                "stop_loss": profile["stop_loss"],
                "take_profit": profile["take_profit"],
                "position_size": profile["position_size"],
            },
            "params": {"initial_cash": 10_000, "fee": 0.001},
        },
    }


_CODE_TEMPLATE = '''class {class_name}(Strategy):
    """{description}"""

    symbol = "{symbol}"
    timeframe = "{timeframe}"
    stop_loss = {stop_loss}
    take_profit = {take_profit}

    def should_enter(self, bar):
        return {entry}

    def should_exit(self, bar):
        return {exit}
'''


def _render_condition(conditions: list[Any]) -> str:
    if not conditions:
        return "False"
    return " and ".join(f"bar.eval({str(c)!r})" for c in conditions)


def generate_strategy_code(payload: dict[str, Any]) -> dict[str, Any]:
    """Render executable strategy code from a plan."""
    dsl = payload.get("dsl")
    if not isinstance(dsl, dict):
        raise ValueError("a strategy DSL object is required to generate code")

    name = str(dsl.get("strategy_name") or "generated_strategy")
    risk = dsl.get("risk") or {}
    class_name = "".join(
        part.title() for part in re.split(r"\W+|_", name) if part
    )
    code = _CODE_TEMPLATE.format(
        class_name=class_name or "Generated",
        description=str(dsl.get("description") or name).replace('"', "'"),
        symbol=dsl.get("symbol", "BTC/USDT"),
        timeframe=dsl.get("timeframe", "1h"),
        stop_loss=risk.get("stop_loss", 0.02),
        take_profit=risk.get("take_profit", 0.04),
        entry=_render_condition(list(dsl.get("entry") or [])),
        exit=_render_condition(list(dsl.get("exit") or [])),
    )
    return {
        "status": "success",
        "strategy": {
            "name": name,
            "code": code,
            "timeframe": dsl.get("timeframe", "1h"),
            "asset": dsl.get("symbol", "BTC/USDT"),
        },
    }


def run_backtest(payload: dict[str, Any]) -> dict[str, Any]:
    """Full backtest over the synthetic series."""
    strategy = payload.get("strategy")
    if not isinstance(strategy, dict):
        raise ValueError("a strategy object is required to run a backtest")

    plan = dict(strategy.get("dsl") or strategy)
    plan.setdefault("symbol", payload.get("symbol") or strategy.get("asset"))
    plan.setdefault("timeframe", strategy.get("timeframe"))
    if payload.get("initial_capital"):
        plan["params"] = {
            **(plan.get("params") or {}),
            "initial_cash": payload["initial_capital"],
        }

    timeframe = str(plan.get("timeframe") or "1h")
    bars = 90 * _TIMEFRAME_BARS_PER_DAY.get(timeframe, 24)
    summary = simulate_strategy(plan, bars=min(bars, 5_000))
    return {"status": "success", "backtest": {"summary": summary}}


def save_strategy(payload: dict[str, Any]) -> dict[str, Any]:
    """Hand the strategy to storage and return its handle."""
    strategy = payload.get("strategy")
    if not isinstance(strategy, dict):
        raise ValueError("a strategy object is required to save")
    name = payload.get("name") or strategy.get("name") or "Untitled Strategy"
    return {
        "status": "success",
        "saved_strategy": {
            "strategy_id": f"strategy_{uuid.uuid4().hex[:12]}",
            "status": "saved",
            "name": name,
            "tags": list(payload.get("tags") or []),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        },
    }


def analyze_market_data(payload: dict[str, Any]) -> dict[str, Any]:
    """Indicator snapshot and trend read for a symbol/timeframe."""
    symbol = str(payload.get("symbol") or "").upper()
    if not symbol:
        raise ValueError("a symbol is required for market analysis")
    timeframe = str(payload.get("timeframe") or "1h")
    limit = int(payload.get("limit") or 200)

    closes = synthetic_prices(symbol, timeframe, max(limit, 60))
    latest = closes[-1]
    sma_20 = _sma(closes, 20)
    sma_50 = _sma(closes, 50)
    rsi = _rsi(closes)
    per_day = _TIMEFRAME_BARS_PER_DAY.get(timeframe, 24)
    day_ago = closes[-min(per_day + 1, len(closes))]

    if sma_20 > sma_50:
        trend = "bullish"
    elif sma_20 < sma_50:
        trend = "bearish"
    else:
        trend = "sideways"
    if rsi < 30:
        action = "buy"
    elif rsi > 70:
        action = "sell"
    else:
        action = "buy" if trend == "bullish" else "hold"

    return {
        "status": "success",
        "analysis": {
            "symbol": symbol,
            "timeframe": timeframe,
            "latest_price": latest,
            "price_change_24h": round(100.0 * (latest / day_ago - 1.0), 2),
            "indicators": {
                "RSI": rsi,
                "SMA_20": round(sma_20, 4),
                "SMA_50": round(sma_50, 4),
            },
            "summary": {
                "trend": trend,
                "recommendation": {"action": action, "confidence": 0.6},
            },
        },
        "candles": closes[-30:],
        "patterns": [],
    }


# ---------------------------------------------------------------------------
# Default registry
# ---------------------------------------------------------------------------

DEFAULT_TOOLS: list[ToolDefinition] = [
    ToolDefinition(
        name="create_dsl",
        label="Create Strategy DSL",
        description=(
            "Create a structured strategy definition (DSL) from the user's "
            "idea, optionally improving on a previous backtest."
        ),
        category="strategy",
        parameters={
            "type": "object",
            "properties": {
                "description": {
                    "type": "string",
                    "description": "User description of the strategy.",
                },
                "symbol": {
                    "type": "string",
                    "description": "Trading pair, e.g. BTC/USDT.",
                },
                "timeframe": {
                    "type": "string",
                    "description": "Candle timeframe, e.g. 1h, 4h, 1d.",
                },
                "risk_level": {
                    "type": "string",
                    "enum": ["conservative", "moderate", "aggressive"],
                },
                "previous_backtest": {
                    "type": "object",
                    "description": "Previous backtest summary to improve.",
                },
                "market_analysis": {
                    "type": "object",
                    "description": "Current market analysis for the symbol.",
                },
            },
            "required": ["description"],
        },
        execute=create_dsl,
    ),
    ToolDefinition(
        name="generate_strategy_code",
        label="Generate Strategy Code",
        description="Convert a strategy DSL into executable strategy code.",
        category="strategy",
        parameters={
            "type": "object",
            "properties": {
                "dsl": {
                    "type": "object",
                    "description": "The DSL to convert.",
                },
            },
            "required": ["dsl"],
        },
        execute=generate_strategy_code,
    ),
    ToolDefinition(
        name="run_backtest",
        label="Run Backtest",
        description="Run a full historical backtest of a generated strategy.",
        category="analysis",
        requires_approval=True,
        parameters={
            "type": "object",
            "properties": {
                "strategy": {
                    "type": "object",
                    "description": "The strategy to backtest.",
                },
                "symbol": {"type": "string"},
                "start_date": {"type": "string", "description": "YYYY-MM-DD"},
                "end_date": {"type": "string", "description": "YYYY-MM-DD"},
                "initial_capital": {"type": "number"},
            },
            "required": ["strategy"],
        },
        execute=run_backtest,
    ),
    ToolDefinition(
        name="save_strategy",
        label="Save Strategy",
        description="Save a completed strategy for later use.",
        category="storage",
        requires_approval=True,
        parameters={
            "type": "object",
            "properties": {
                "strategy": {
                    "type": "object",
                    "description": "The strategy to save.",
                },
                "name": {"type": "string"},
                "description": {"type": "string"},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["strategy"],
        },
        execute=save_strategy,
    ),
    ToolDefinition(
        name="analyze_market_data",
        label="Analyze Market Data",
        description=(
            "Fetch current market conditions and technical indicators for "
            "a symbol."
        ),
        category="analysis",
        parameters={
            "type": "object",
            "properties": {
                "symbol": {"type": "string"},
                "timeframe": {"type": "string"},
                "limit": {
                    "type": "integer",
                    "description": "Number of candles to analyse.",
                },
            },
            "required": ["symbol"],
        },
        execute=analyze_market_data,
    ),
]

_default_registry: ToolRegistry | None = None


def get_default_registry() -> ToolRegistry:
    """Return the process-wide registry, building it on first use."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ToolRegistry(DEFAULT_TOOLS)
        logger.info("Registered %d default tools", len(_default_registry))
    return _default_registry
