import sys

import click
from rich.panel import Panel

from parley.cli.commands import (
    chat_command,
    chats_group,
    config_command,
    models_command,
    providers_command,
    version_command,
)
from parley.cli.utils import console, print_error
from parley.utils.errors import ParleyError
from parley.utils.logging import get_logger

logger = get_logger(__name__)


def handle_exception(e: BaseException, debug_mode: bool = False) -> None:
    """Handle exceptions with clean output and a meaningful exit code."""
    exit_code = 1

    if isinstance(e, ParleyError):
        exit_code = getattr(e, "exit_code", 1)
        print_error(e)
    elif isinstance(e, KeyboardInterrupt):
        console.print("[yellow]Interrupted[/yellow]")
        exit_code = 130
    else:
        console.print(
            Panel(
                f"[red]Unexpected Error[/red]: {e}\n\n"
                "[dim]This is a bug. Run again with --debug for a traceback.[/dim]",
                title="[bold]Parley Error[/bold]",
                border_style="red",
            )
        )

    if debug_mode:
        logger.exception(f"Unhandled exception: {e}")
        console.print_exception(show_locals=True)

    sys.exit(exit_code)


class ParleyGroup(click.Group):
    """Click group that renders Parley errors instead of tracebacks"""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except ParleyError as e:
            debug = bool(ctx.obj and ctx.obj.get("debug"))
            handle_exception(e, debug_mode=debug)
        except KeyboardInterrupt as e:
            handle_exception(e)


@click.group(
    cls=ParleyGroup,
    invoke_without_command=True,
    context_settings=dict(help_option_names=["-h", "--help"]),
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config.yaml (default: ~/.parley/config.yaml)",
)
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx, config_path, debug):
    """Parley - multi-provider AI chat

    \b
    Examples:
      parley chat                       # Continue the active conversation
      parley chat --new -p gemini       # New conversation with Gemini
      parley chats                      # List conversations
      parley chats export backup.json   # Export everything
      parley config set-key openai      # Store an API key in the keyring
    """
    ctx.obj = {"config_path": config_path, "debug": debug}

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(chat_command, "chat")
cli.add_command(chats_group, "chats")
cli.add_command(models_command, "models")
cli.add_command(providers_command, "providers")
cli.add_command(config_command, "config")
cli.add_command(version_command, "version")


if __name__ == "__main__":
    cli()
