"""
Policy CLI Subcommands

Dry-run the command policy without touching any backend.
"""

import json as json_lib

import typer
from rich.console import Console

from capgate.config import config
from capgate.gateway.policy import CommandPolicy

policy_app = typer.Typer(
    name="policy",
    help="Check commands and repositories against the command policy",
    no_args_is_help=True,
)

console = Console()


def get_policy() -> CommandPolicy:
    return CommandPolicy(
        trusted_repository_pattern=config.gateway.trusted_repository_pattern,
        workspace_root=config.gateway.workspace_root,
    )


def _report(decision, subject: str, json: bool) -> None:
    if json:
        print(json_lib.dumps({"input": subject, **decision.to_dict()}, indent=2))
    elif decision.allowed:
        console.print(f"[green]ALLOW[/green] {subject}")
    else:
        console.print(f"[red]DENY[/red] {subject}")
        console.print(f"  [dim]{decision.code}: {decision.reason}[/dim]")

    if not decision.allowed:
        raise typer.Exit(1)


@policy_app.command("check")
def check_command(
    command: str = typer.Argument(..., help="Free-form command to evaluate"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Evaluate a free-form command. Exit code 1 when denied."""
    _report(get_policy().check_command(command), command, json)


@policy_app.command("check-repo")
def check_repository(
    url: str = typer.Argument(..., help="Repository URL to evaluate"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Evaluate a clone URL against the trusted-organization pattern."""
    _report(get_policy().check_repository(url), url, json)
