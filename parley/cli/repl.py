"""Interactive REPL chat mode for Parley."""

from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from rich.live import Live
from rich.markup import escape
from rich.text import Text

from parley.cli.utils import (
    console,
    format_usage,
    parse_provider,
    print_error,
    resolve_conversation_id,
    short_id,
)
from parley.core.app import ParleyApp
from parley.core.store import ConversationStore
from parley.session.models import Message
from parley.utils.errors import ParleyError
from parley.utils.logging import get_logger

logger = get_logger(__name__)

REPL_COMMANDS = {
    "/exit",
    "/quit",
    "/help",
    "/new",
    "/switch",
    "/model",
    "/title",
    "/history",
}

repl_completer = WordCompleter(
    list(REPL_COMMANDS),
    ignore_case=True,
    sentence=True,
)


def prepare_conversation(
    app: ParleyApp,
    provider: Optional[str],
    model: Optional[str],
    new_conversation: bool,
) -> str:
    """Pick the conversation the REPL starts on, creating or re-targeting it as asked.

    Returns:
        The active conversation id.
    """
    store = app.store
    config = app.config_manager
    active = store.active_conversation

    if new_conversation or active is None:
        provider = provider or config.get_default_provider()
        model = model or config.get_default_model(provider)
        return store.create_conversation(parse_provider(provider), model)

    if provider or model:
        target = parse_provider(provider) if provider else active.provider
        model = model or config.get_default_model(target.value)
        store.update_provider(active.id, target, model)
    return active.id


async def stream_reply(store: ConversationStore, text: str) -> Optional[Message]:
    """Send ``text`` and render the reply live as the store reports progress."""
    console.print("[bold green]Assistant:[/bold green]")
    with Live(Text(""), console=console, refresh_per_second=12, transient=False) as live:

        def render():
            conversation = store.active_conversation
            if conversation and conversation.messages:
                last = conversation.messages[-1]
                if last.role == "assistant":
                    live.update(Text(last.content or ("..." if last.is_loading else "")))

        unsubscribe = store.subscribe(render)
        try:
            reply = await store.send_message(text)
        finally:
            unsubscribe()

    if reply is None:
        console.print("[yellow]Reply abandoned[/yellow]")
    elif reply.error:
        console.print(f"[red]Error: {escape(reply.error)}[/red]")
    elif reply.token_usage:
        console.print(f"[dim]{format_usage(reply.token_usage)}[/dim]")
    return reply


async def repl_main(
    app: ParleyApp,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    new_conversation: bool = False,
) -> None:
    """Interactive chat REPL over the conversation store."""
    async with app:
        store = app.store
        prepare_conversation(app, provider, model, new_conversation)
        show_header(store)

        prompt_session = PromptSession(completer=repl_completer)

        while True:
            try:
                print()
                user_input = (await prompt_session.prompt_async("You: ")).strip()

                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if not handle_repl_command(user_input, app):
                        break
                    continue

                print()
                await stream_reply(store, user_input)

            except KeyboardInterrupt:
                print()
                continue
            except EOFError:
                console.print("\n[dim]Goodbye![/dim]")
                break
            except ParleyError as e:
                logger.debug(f"REPL command failed: {e}")
                print_error(e)


def handle_repl_command(cmd: str, app: ParleyApp) -> bool:
    """Handle REPL commands.

    Returns:
        False if the REPL should exit, True otherwise.
    """
    store = app.store
    parts = cmd.split(maxsplit=1)
    command = parts[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""

    if command in ("/exit", "/quit"):
        console.print("[dim]Goodbye![/dim]")
        return False

    elif command == "/help":
        show_help()

    elif command == "/new":
        active = store.active_conversation
        words = args.split()
        provider = words[0] if words else (active.provider.value if active else None)
        model = words[1] if len(words) > 1 else None
        prepare_conversation(app, provider, model, new_conversation=True)
        show_header(store)

    elif command == "/switch":
        if not args:
            console.print("[yellow]Usage: /switch <id>[/yellow]")
        else:
            store.set_active_conversation(resolve_conversation_id(store, args))
            show_header(store)

    elif command == "/model":
        words = args.split()
        if len(words) != 2:
            active = store.active_conversation
            if active:
                console.print(f"[dim]Current model: {active.provider.value}/{active.model}[/dim]")
            console.print("[yellow]Usage: /model <provider> <model>[/yellow]")
        else:
            store.update_provider(store.active_conversation_id, parse_provider(words[0]), words[1])
            console.print(f"[green]✓[/green] Switched to model: {words[0]}/{words[1]}")

    elif command == "/title":
        if not args:
            console.print("[yellow]Usage: /title <text>[/yellow]")
        else:
            store.update_title(store.active_conversation_id, args)
            console.print(f"[green]✓[/green] Renamed to '{escape(args)}'")

    elif command == "/history":
        limit = int(args) if args.isdigit() else 10
        active = store.active_conversation
        show_history(list(active.messages) if active else [], limit)

    else:
        console.print(f"[red]Unknown command: {command}[/red]")
        console.print("[dim]Type /help for available commands[/dim]")

    return True


def show_header(store: ConversationStore) -> None:
    active = store.active_conversation
    if active is None:
        return
    console.print(f"[bold cyan]{escape(active.title)}[/bold cyan]")
    console.print(f"[dim]Conversation: {short_id(active.id)}[/dim]")
    console.print(f"[dim]Model: {active.provider.value}/{active.model}[/dim]")
    console.print("[dim]Type /help for commands, Ctrl+D or /exit to quit[/dim]")


def show_help() -> None:
    """Display help text for REPL commands."""
    help_text = """
[bold]REPL Commands:[/bold]

  [cyan]/help[/cyan]                       Show this help
  [cyan]/exit, /quit[/cyan]                Exit REPL (also Ctrl+D)
  [cyan]/new \\[provider] \\[model][/cyan]   Start a new conversation
  [cyan]/switch <id>[/cyan]                Switch to another conversation
  [cyan]/model <provider> <model>[/cyan]   Change model for future replies
  [cyan]/title <text>[/cyan]               Rename this conversation
  [cyan]/history \\[n][/cyan]              Show last N messages
"""
    console.print(help_text)


def show_history(messages: List[Message], limit: int) -> None:
    """Display the last ``limit`` messages, truncated for display."""
    shown = messages[-limit:]
    console.print(f"[dim]Last {len(shown)} messages:[/dim]\n")
    for message in shown:
        role_color = "cyan" if message.role == "user" else "green"
        label = "You" if message.role == "user" else "Assistant"
        content = escape(message.content[:200] + "..." if len(message.content) > 200 else message.content)
        if message.error:
            content = f"{content} [red]({escape(message.error)})[/red]"
        console.print(f"[{role_color}]{label}:[/{role_color}] {content}\n")
