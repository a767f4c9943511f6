import asyncio

import click
from rich.table import Table

from parley.cli.utils import console, init_app, parse_provider
from parley.config.config_manager import ConfigManager
from parley.session.models import Provider

VERSION = "0.1.0"


@click.command()
@click.option("-p", "--provider", help="Filter by provider")
@click.pass_context
def models(ctx, provider):
    """List known models of enabled providers"""
    app = init_app(ctx)
    all_models = asyncio.run(app.provider_manager.list_all_models())

    if provider:
        all_models = {k: v for k, v in all_models.items() if k == parse_provider(provider).value}

    if not all_models:
        console.print("[yellow]No models available. Check that a provider is enabled.[/yellow]")
        return

    for provider_name, models_list in all_models.items():
        table = Table(title=f"{provider_name.upper()} Models", show_header=True)
        table.add_column("Model ID", style="cyan")
        table.add_column("Name", style="green")

        for model in models_list:
            table.add_row(model.id, model.name)

        console.print(table)
        console.print()


@click.command()
@click.pass_context
def providers(ctx):
    """List providers and whether they are ready to use"""
    app = init_app(ctx)
    enabled = app.provider_manager.list_providers()

    table = Table(title="Providers", show_header=True)
    table.add_column("Provider", style="cyan")
    table.add_column("Enabled", justify="center")
    table.add_column("API key", justify="center")
    table.add_column("Default Model", style="green")

    for provider in Provider:
        is_enabled = provider.value in enabled
        has_key = app.provider_manager.is_configured(provider)
        table.add_row(
            provider.value,
            "[green]✓[/green]" if is_enabled else "[red]✗[/red]",
            "[green]✓[/green]" if has_key else "[red]✗[/red]",
            app.config_manager.get_default_model(provider.value),
        )

    console.print(table)


@click.group(invoke_without_command=True)
@click.pass_context
def config(ctx):
    """Show current configuration"""
    if ctx.invoked_subcommand is not None:
        return
    cfg = init_app(ctx).config_manager

    console.print("\n[bold cyan]Configuration[/bold cyan]")
    console.print(f"  Config file: [yellow]{cfg.config_path}[/yellow]")
    console.print("\n[bold cyan]Defaults[/bold cyan]")
    console.print(f"  Provider: [green]{cfg.get_default_provider()}[/green]")
    console.print(f"  Model: [green]{cfg.get_default_model()}[/green]")
    console.print("\n[bold cyan]Storage[/bold cyan]")
    console.print(f"  Path: [green]{cfg.get('storage.path')}[/green]")
    console.print(f"  Cache size: [green]{cfg.get('storage.cache_size')}[/green]")
    console.print(f"  Max history: [green]{cfg.get('storage.max_history')}[/green]")
    console.print(f"  Stream throttle: [green]{cfg.get('streaming.throttle_ms')} ms[/green]")
    console.print()


@config.command(name="set-key")
@click.argument("provider")
@click.option("--key", prompt="API key", hide_input=True, help="API key to store")
@click.pass_context
def config_set_key(ctx, provider, key):
    """Store a provider API key in the system keyring"""
    obj = ctx.find_root().obj or {}
    target = parse_provider(provider)
    cfg = ConfigManager(obj.get("config_path"))
    cfg.set_api_key(target.value, key.strip())
    console.print(f"[green]✓[/green] Stored {target.value.upper()}_API_KEY in the system keyring")


@click.command()
def version():
    """Show version information"""
    console.print(f"[cyan]Parley[/cyan] v{VERSION}")
    console.print("Multi-provider AI chat client")


models_command = models
providers_command = providers
config_command = config
version_command = version

__all__ = [
    "models_command",
    "providers_command",
    "config_command",
    "version_command",
]
