from pathlib import Path
from typing import Optional

import click
from rich.markup import escape
from rich.table import Table

from parley.cli.utils import console, format_usage, init_app, resolve_conversation_id, short_id
from parley.utils.errors import PersistenceError


@click.group(name="chats", invoke_without_command=True)
@click.pass_context
def chats_group(ctx):
    """Manage stored conversations

    \b
    Commands:
      parley chats                     List conversations
      parley chats show <id>           Display a conversation
      parley chats rename <id> <title> Rename a conversation
      parley chats delete <id>         Delete a conversation
      parley chats export [FILE]       Export every conversation as JSON
      parley chats import FILE         Replace all conversations from an export
      parley chats clear --yes         Delete every conversation
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(chats_list)


@chats_group.command(name="list")
@click.option("--recent", "-r", type=int, help="Show N most recent conversations")
@click.pass_context
def chats_list(ctx, recent: Optional[int]):
    """List conversations, most recently updated first"""
    app = init_app(ctx)
    entries = app.store.metadata_index

    if not entries:
        console.print("[yellow]No conversations found[/yellow]")
        return

    if recent:
        entries = entries[:recent]

    table = Table(show_header=True)
    table.add_column("Id", style="cyan")
    table.add_column("Title")
    table.add_column("Model")
    table.add_column("Messages", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Updated", style="dim")

    for entry in entries:
        marker = "*" if entry.id == app.store.active_conversation_id else " "
        table.add_row(
            f"{marker}{short_id(entry.id)}",
            escape(entry.title),
            f"{entry.provider.value}/{entry.model}",
            str(entry.message_count),
            f"${entry.total_cost:.4f}" if entry.total_cost is not None else "",
            entry.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@chats_group.command(name="show")
@click.argument("conversation_id")
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(["pretty", "json"]),
    default="pretty",
    help="Output format",
)
@click.pass_context
def chats_show(ctx, conversation_id: str, fmt: str):
    """Display a conversation"""
    app = init_app(ctx)
    conversation = app.store.get_conversation(resolve_conversation_id(app.store, conversation_id))

    if fmt == "json":
        click.echo(conversation.model_dump_json(by_alias=True, indent=2))
        return

    console.print(f"\n[bold]{escape(conversation.title)}[/bold]")
    console.print(
        f"[dim]Model: {conversation.provider.value}/{conversation.model} | "
        f"Messages: {len(conversation.messages)}[/dim]\n"
    )
    for message in conversation.messages:
        if message.role == "user":
            console.print("[bold cyan]You:[/bold cyan]")
        elif message.role == "system":
            console.print("[bold magenta]System:[/bold magenta]")
        else:
            console.print("[bold green]Assistant:[/bold green]")
        console.print(escape(message.content))
        if message.error:
            console.print(f"[red]{escape(message.error)}[/red]")
        if message.token_usage:
            console.print(f"[dim]{format_usage(message.token_usage)}[/dim]")
        console.print()


@chats_group.command(name="rename")
@click.argument("conversation_id")
@click.argument("title")
@click.pass_context
def chats_rename(ctx, conversation_id: str, title: str):
    """Rename a conversation"""
    app = init_app(ctx)
    full_id = resolve_conversation_id(app.store, conversation_id)
    app.store.update_title(full_id, title)
    console.print(f"[green]✓[/green] Renamed {short_id(full_id)} to '{escape(title)}'")


@chats_group.command(name="delete")
@click.argument("conversation_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def chats_delete(ctx, conversation_id: str, yes: bool):
    """Delete a conversation"""
    app = init_app(ctx)
    full_id = resolve_conversation_id(app.store, conversation_id)
    if not yes:
        click.confirm(f"Delete conversation {short_id(full_id)}?", abort=True)
    app.store.delete_conversation(full_id)
    console.print(f"[green]✓[/green] Deleted {short_id(full_id)}")


@chats_group.command(name="export")
@click.argument("output", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def chats_export(ctx, output: Optional[str]):
    """Export every conversation as JSON (to FILE or stdout)"""
    app = init_app(ctx)
    document = app.store.export_json()

    if not output:
        click.echo(document)
        return
    try:
        Path(output).write_text(document, encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"Could not write {output}: {e}") from e
    console.print(f"[green]✓[/green] Exported {len(app.store.metadata_index)} conversations to {output}")


@chats_group.command(name="import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def chats_import(ctx, source: str, yes: bool):
    """Replace all conversations with the contents of an export file"""
    app = init_app(ctx)
    if not yes and app.store.metadata_index:
        click.confirm("Importing replaces every existing conversation. Continue?", abort=True)
    try:
        payload = Path(source).read_text(encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"Could not read {source}: {e}") from e
    app.store.import_all(payload)
    console.print(f"[green]✓[/green] Imported {len(app.store.metadata_index)} conversations")


@chats_group.command(name="clear")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def chats_clear(ctx, yes: bool):
    """Delete every conversation"""
    app = init_app(ctx)
    if not yes:
        click.confirm("Delete every conversation?", abort=True)
    count = len(app.store.metadata_index)
    app.store.clear_all()
    console.print(f"[green]✓[/green] Deleted {count} conversations")
