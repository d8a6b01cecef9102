"""
capgate CLI — Main Entry Point

Usage:
    capgate serve --port 8000
    capgate policy check "git status"
    capgate policy check-repo https://github.com/worksquares/app
    capgate scopes
"""

import typer
from rich.console import Console
from rich.table import Table

from capgate import __version__
from capgate.cli.policy_cli import policy_app
from capgate.config import config
from capgate.trust.scopes import SCOPE_OPERATIONS

app = typer.Typer(
    name="capgate",
    help="Capability-scoped authorization gateway",
    no_args_is_help=True,
)

app.add_typer(policy_app, name="policy", help="Dry-run the command policy")

console = Console()


@app.callback()
def main_callback():
    """capgate — capability-scoped authorization gateway."""
    pass


@app.command()
def serve(
    host: str = typer.Option(config.api.host, "--host", help="Bind address"),
    port: int = typer.Option(config.api.port, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(config.api.debug, "--reload", help="Auto-reload on code changes"),
):
    """Run the HTTP API."""
    from capgate.utils.logging_setup import setup_logging
    setup_logging()
    import uvicorn
    uvicorn.run("capgate.api.main:app", host=host, port=port, reload=reload)


@app.command()
def scopes():
    """List scopes and the operations each one grants."""
    table = Table(title="Scopes")
    table.add_column("Scope", style="cyan")
    table.add_column("Operations", style="green")
    for scope, operations in SCOPE_OPERATIONS.items():
        table.add_row(scope, ", ".join(sorted(operations)))
    console.print(table)


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]capgate[/bold] v{__version__}")
    console.print("Capability-scoped authorization gateway")


if __name__ == "__main__":
    app()
