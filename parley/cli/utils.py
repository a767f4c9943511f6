from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel

from parley.core.app import ParleyApp
from parley.core.store import ConversationStore
from parley.session.models import Provider, TokenUsage
from parley.utils.errors import ConversationNotFoundError, ParleyError, ValidationError

console = Console()


def init_app(ctx: Optional[click.Context] = None) -> ParleyApp:
    """Build the application from the options stored on the root click context"""
    obj = (ctx.find_root().obj if ctx else None) or {}
    return ParleyApp.create(obj.get("config_path"), debug=obj.get("debug", False))


def short_id(conversation_id: str) -> str:
    return conversation_id[:8]


def resolve_conversation_id(store: ConversationStore, prefix: str) -> str:
    """Expand a (possibly shortened) conversation id to a full one"""
    matches = [entry.id for entry in store.metadata_index if entry.id.startswith(prefix)]
    if not matches:
        raise ConversationNotFoundError(prefix)
    if len(matches) > 1:
        raise ValidationError(
            f"Id prefix '{prefix}' matches {len(matches)} conversations",
            hint="Use more characters of the id",
        )
    return matches[0]


def format_usage(usage: Optional[TokenUsage]) -> str:
    if usage is None:
        return ""
    parts = []
    if usage.prompt_tokens is not None:
        parts.append(f"in {usage.prompt_tokens}")
    if usage.completion_tokens is not None:
        parts.append(f"out {usage.completion_tokens}")
    if usage.total_tokens is not None:
        parts.append(f"total {usage.total_tokens} tokens")
    if usage.total_cost is not None:
        parts.append(f"${usage.total_cost:.6f}")
    elif usage.prompt_cost is not None:
        parts.append(f"prompt ${usage.prompt_cost:.6f}")
    return " · ".join(parts)


def print_error(error: ParleyError) -> None:
    """Render a ParleyError and its hints as a panel"""
    notes = getattr(error, "__notes__", [])
    body = f"[red]Error[/red]: {error}"
    if notes:
        body += "\n\n" + "\n".join(f"[dim]💡 {note}[/dim]" for note in notes)
    console.print(Panel(body, title="[bold]Parley Error[/bold]", border_style="red"))


def parse_provider(name: str) -> Provider:
    try:
        return Provider(name.lower())
    except ValueError as e:
        choices = ", ".join(p.value for p in Provider)
        raise ValidationError(f"Unknown provider '{name}'", hint=f"Choose one of: {choices}") from e
