from __future__ import annotations

import json
import logging
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from epicscore import services
from epicscore.config import get_settings
from epicscore.db import init_db, session_scope
from epicscore.errors import EpicScoreError
from epicscore.repository import Repository

app = typer.Typer(help="EpicScore: team effort and risk estimation for epics")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _fmt(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _open_db() -> None:
    settings = get_settings()
    init_db(settings.database_path, settings.default_roles)


def _fail(exc: EpicScoreError) -> None:
    console.print(f"[red]✗[/red] {exc}")
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    settings = get_settings()
    init_db(settings.database_path, settings.default_roles)
    payload = {"status": "ok", "database": str(settings.database_path)}
    if _wants_json(ctx):
        _echo_json(payload)
        return
    console.print(f"[green]✓[/green] database ready at {settings.database_path}")


@app.command("serve")
def serve_command(
    host: str | None = typer.Option(None, help="Bind address (defaults to config)."),
    port: int | None = typer.Option(None, help="Port (defaults to config)."),
) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("epicscore.app:app", host=host or settings.host, port=port or settings.port)


@app.command("teams")
def teams_command(ctx: typer.Context) -> None:
    _open_db()
    with session_scope() as session:
        repo = Repository(session)
        teams = [services.team_summary(repo, t) for t in repo.list_teams()]

    if _wants_json(ctx):
        _echo_json(teams)
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Team", style="bold")
    table.add_column("Members", justify="right")
    table.add_column("Description")
    for t in teams:
        table.add_row(t["name"], str(t["member_count"]), t["description"] or "-")
    console.print(Panel(table, title="teams", border_style="cyan"))


@app.command("results")
def results_command(ctx: typer.Context, number: str = typer.Argument(..., help="Epic number")) -> None:
    _open_db()
    try:
        with session_scope() as session:
            repo = Repository(session)
            epic = services.require_epic_by_number(repo, number)
            results = services.epic_results(repo, epic.id)
    except EpicScoreError as exc:
        _fail(exc)

    if _wants_json(ctx):
        _echo_json(results)
        return

    roles = Table(show_header=True, header_style="bold green", box=ROUNDED)
    roles.add_column("Role", style="bold")
    roles.add_column("Weighted avg", justify="right")
    for rs in results["role_scores"]:
        roles.add_row(rs["role"], _fmt(rs["weighted_avg"]))

    risks = Table(show_header=True, header_style="bold yellow", box=ROUNDED)
    risks.add_column("Risk", style="bold")
    risks.add_column("Status")
    risks.add_column("Score", justify="right")
    risks.add_column("Coef", justify="right")
    for r in results["risks"]:
        risks.add_row(r["description"], r["status"], _fmt(r["weighted_score"]), _fmt(r["coefficient"]))

    title = f"{results['number']} · {results['name']} · {results['status']}"
    console.print(Panel(roles, title=title, border_style="green"))
    if results["risks"]:
        console.print(Panel(risks, title="risks", border_style="yellow"))
    console.print(f"Final score: [bold]{_fmt(results['final_score'])}[/bold]")


@app.command("status")
def status_command(ctx: typer.Context, number: str = typer.Argument(..., help="Epic number")) -> None:
    _open_db()
    try:
        with session_scope() as session:
            repo = Repository(session)
            epic = services.require_epic_by_number(repo, number)
            report = services.epic_status_report(repo, epic.id)
    except EpicScoreError as exc:
        _fail(exc)

    if _wants_json(ctx):
        _echo_json(report)
        return

    table = Table(show_header=True, header_style="bold magenta", box=ROUNDED)
    table.add_column("Target", style="bold")
    table.add_column("Status")
    table.add_column("Missing")
    table.add_row(
        "effort",
        report["status"],
        ", ".join(m["name"] for m in report["missing_effort"]) or "[green]none[/green]",
    )
    for r in report["risks"]:
        table.add_row(
            r["description"],
            r["status"],
            ", ".join(m["name"] for m in r["missing"]) or "[green]none[/green]",
        )
    title = f"{report['number']} · {report['name']} · {report['member_count']} members"
    console.print(Panel(table, title=title, border_style="magenta"))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
