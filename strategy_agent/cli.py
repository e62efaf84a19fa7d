"""strategy_agent/cli.py

Interactive REPL for the strategy agent.

Tool calls that need approval are put to the operator at the console; the
answer resolves the approval gate directly.
"""

from __future__ import annotations

# Standard Library
import json
import logging
import sys
import uuid
from collections.abc import Callable
from typing import Any

# Third-Party Libraries
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.theme import Theme

# Local Modules
from strategy_agent.approval import ApprovalGate, PendingApproval
from strategy_agent.config import OrchestratorSettings, configure_logging
from strategy_agent.controller import OrchestrationController
from strategy_agent.history import InMemoryHistoryStore
from strategy_agent.models import ActionTag, RunRequest

logger = logging.getLogger(__name__)

custom_theme = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "event": "dim",
    }
)

_ACTION_STYLES: dict[ActionTag, str] = {
    ActionTag.AGENT_REPLY: "green",
    ActionTag.CLARIFICATION_NEEDED: "yellow",
    ActionTag.TOOL_CALL_REJECTED: "yellow",
    ActionTag.RUN_CANCELLED: "yellow",
}


def console_approval_listener(
    console: Console, gate: ApprovalGate
) -> Callable[[str, PendingApproval], None]:
    """Build a gate listener that asks the operator about each request."""

    def _listener(event: str, record: PendingApproval) -> None:
        if event != "requested":
            return
        params = {
            k: v
            for k, v in record.to_dict()["params"].items()
            if k != "conversation_history"
        }
        console.print(
            Panel(
                f"[bold]{record.tool_label}[/bold] ({record.tool_name})\n"
                f"{record.reason}\n\n"
                f"{json.dumps(params, indent=2, default=str)}",
                title="Approval required",
                border_style="yellow",
            )
        )
        if Confirm.ask("Run this tool?", default=True, console=console):
            gate.approve(record.call_id)
        else:
            feedback = Prompt.ask(
                "Feedback for the assistant (optional)",
                default="",
                console=console,
            )
            gate.reject(record.call_id, feedback.strip() or None)

    return _listener


def _print_event(console: Console) -> Callable[[str, dict[str, Any]], None]:
    def _on_event(event: str, payload: dict[str, Any]) -> None:
        tool = payload.get("label") or payload.get("tool") or ""
        console.print(f"  · {event} {tool}".rstrip(), style="event")

    return _on_event


def display_help(console: Console) -> None:
    help_text = """
**Available Commands:**

- `/help` - Show this help message
- `/clear` - Start a new conversation
- `/quit` or `/exit` - Exit
- Any other text - Talk to the strategy assistant
    """
    console.print(
        Panel(Markdown(help_text), title="Help", border_style="cyan")
    )


def run() -> None:
    """Interactive REPL entry point."""
    load_dotenv()
    settings = OrchestratorSettings()
    configure_logging(settings.log_level)
    console = Console(theme=custom_theme)

    console.print(
        Panel(
            "[bold cyan]Strategy Agent[/bold cyan]\n"
            "[dim]Design, check and save trading strategies. "
            "Type /help for commands.[/dim]",
            border_style="cyan",
        )
    )
    console.print(
        f"Planner: {settings.planner_backend} · {settings.planner_model}",
        style="info",
    )

    history = InMemoryHistoryStore(
        max_messages=settings.history_limit * 2,
        max_conversations=settings.history_max_conversations,
    )
    try:
        controller = OrchestrationController(
            settings=settings, history_provider=history
        )
    except Exception as exc:
        console.print(f"Failed to initialise: {exc}", style="error")
        sys.exit(1)
    controller.gate.subscribe(
        console_approval_listener(console, controller.gate)
    )

    conversation_id = f"cli_{uuid.uuid4().hex[:8]}"
    on_event = _print_event(console)

    while True:
        try:
            user_input = Prompt.ask(
                "[bold blue]You[/bold blue]", console=console
            ).strip()
            if not user_input:
                continue
            if user_input.lower() in {"/quit", "/exit"}:
                console.print("Goodbye.", style="success")
                break
            if user_input.lower() == "/help":
                display_help(console)
                continue
            if user_input.lower() == "/clear":
                history.clear(conversation_id)
                conversation_id = f"cli_{uuid.uuid4().hex[:8]}"
                console.print("Started a new conversation.", style="success")
                continue

            request = RunRequest(
                conversation_id=conversation_id,
                user_id="cli",
                message=user_input,
            )
            reply = controller.run(request, on_event=on_event)
            history.add_message(conversation_id, "user", user_input)
            history.add_message(conversation_id, "assistant", reply.message)

            console.print(
                Panel(
                    Markdown(reply.message),
                    title=f"[bold]Assistant[/bold] [dim]{reply.action}[/dim]",
                    border_style=_ACTION_STYLES.get(reply.action, "red"),
                )
            )
        except KeyboardInterrupt:
            console.print("\nInterrupted. Goodbye.", style="warning")
            break
        except Exception as exc:
            logger.error("REPL error: %s", exc, exc_info=True)
            console.print(f"Error: {exc}", style="error")

    controller.close()


if __name__ == "__main__":
    run()
