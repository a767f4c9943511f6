import asyncio

import click

from parley.cli.repl import repl_main
from parley.cli.utils import init_app
from parley.session.models import Provider


@click.command(name="chat")
@click.option(
    "-p",
    "--provider",
    type=click.Choice([p.value for p in Provider]),
    help="Provider for new conversations or to switch the current one to",
)
@click.option("-m", "--model", help="Model to use (e.g., gpt-4o-mini, claude-3-haiku)")
@click.option("--new", "new_conversation", is_flag=True, help="Start a new conversation")
@click.pass_context
def chat_command(ctx, provider, model, new_conversation):
    """Start interactive chat REPL

    \b
    Examples:
      parley chat                          # Continue the active conversation
      parley chat --new                    # Start a new conversation
      parley chat -p anthropic -m claude-3-haiku
    """
    app = init_app(ctx)
    asyncio.run(
        repl_main(
            app,
            provider=provider,
            model=model,
            new_conversation=new_conversation,
        )
    )
