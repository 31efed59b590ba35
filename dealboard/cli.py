"""Click CLI: convene the board on a deal, inspect credits, serve the API."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from config.config_loader import AppConfig, load_config
from dealboard.credits import InMemoryCreditGate, Plan
from dealboard.dossier import DossierStore, list_dossiers
from dealboard.errors import BoardError
from dealboard.healthcheck import run_health_checks
from dealboard.members import MemberPool, build_pool
from dealboard.output import EventPrinter, MarkdownPersistenceSink, print_verdict, save_transcript
from dealboard.session import SessionController
from dealboard.stores import CompositeSink, InMemoryPersistenceSink
from dealboard.transport import BoardService

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


def build_service(
    config: AppConfig | None = None,
    pool: MemberPool | None = None,
    dossier_dir: Path | None = None,
    output_dir: Path | None = None,
) -> BoardService:
    """Wire a BoardService from configuration.

    Verdict records are kept in memory for lookup and written as markdown
    under ``<output_dir>/verdicts``.
    """
    config = config or load_config()
    pool = pool or build_pool(config)
    records = InMemoryPersistenceSink()
    sink = CompositeSink(
        MarkdownPersistenceSink((output_dir or config.board.output_dir) / "verdicts"),
        records,
    )
    credits = InMemoryCreditGate(config.credits)
    controller = SessionController(
        pool=pool,
        credits=credits,
        results=DossierStore(dossier_dir or config.board.dossier_dir),
        sink=sink,
        prompts=config.prompts,
        board=config.board,
    )
    return BoardService(controller=controller, credits=credits, records=records)


def _check_and_filter_members(pool: MemberPool) -> MemberPool:
    """Run health checks, print results, and ask what to do on failures.

    Returns a pool of the members that answered. Exits if the user declines
    to continue or nobody answered.
    """
    console.print("\n[bold]Checking board members...[/bold]")
    results = asyncio.run(run_health_checks(pool))

    failed: list[str] = []
    for member in pool.members:
        ok, err = results[member.id]
        if ok:
            console.print(f"  [green]OK  [/green] {member.display_name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {member.display_name}: {short_err}")
            failed.append(member.id)

    if not failed:
        console.print()
        return pool

    working = [m.id for m in pool.members if m.id not in failed]
    if not working:
        console.print("\n[bold red]Error:[/bold red] No board member passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed)} member(s) failed:[/yellow] {', '.join(failed)}")
    if not click.confirm("Convene the board with the working members only?", default=True):
        sys.exit(0)
    console.print()
    return pool.subset(working)


async def _run_board(service: BoardService, deal_id: str, user_id: str, output_dir: Path) -> int:
    members = service.controller.pool.members
    printer = EventPrinter(members, console)
    try:
        stream = await service.start_board(deal_id, user_id)
    except BoardError as exc:
        console.print(f"[bold red]Rejected ({exc.reason}):[/bold red] {exc}")
        return 1

    async for event in stream:
        printer(event)

    board = stream.board
    saved = save_transcript(board.session, board.context, board.emitter.events, members, output_dir)
    if board.session.verdict is None:
        console.print(f"\n[dim]Transcript saved to: {saved}[/dim]")
        return 1
    print_verdict(board.session.verdict, members)
    console.print(f"\n[dim]Transcript saved to: {saved}[/dim]")
    return 0


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(verbose: bool) -> None:
    """Deal Board -- multi-model deliberation on a deal's due-diligence findings.

    \b
    Examples:
      dealboard run acme-seed --user alice
      dealboard run acme-seed --user alice --rounds 3 --profile prod
      dealboard credits --user alice
      dealboard serve --port 8000
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)


@main.command()
@click.argument("deal_id")
@click.option("--user", "user_id", required=True, help="User the session is billed to")
@click.option("--rounds", default=None, type=int, help="Number of debate rounds (default: from config)")
@click.option("--profile", type=click.Choice(["test", "prod"]), default=None,
              help="Roster profile (default: from config)")
@click.option("--dossiers", "dossier_dir", default=None, help="Dossier folder (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def run(
    deal_id: str,
    user_id: str,
    rounds: int | None,
    profile: str | None,
    dossier_dir: str | None,
    output_path: str | None,
    skip_health_check: bool,
) -> None:
    """Convene the board on DEAL_ID and print its verdict."""
    config = _load_config_or_exit()
    if rounds is not None:
        config.board.debate_rounds = rounds
    output_dir = Path(output_path) if output_path else config.board.output_dir

    try:
        pool = build_pool(config, profile)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        pool = _check_and_filter_members(pool)

    service = build_service(
        config,
        pool=pool,
        dossier_dir=Path(dossier_dir) if dossier_dir else None,
        output_dir=output_dir,
    )
    console.print(
        f"\n[bold cyan]Deal Board[/bold cyan] -- {len(pool.members)} members, "
        f"{config.board.debate_rounds} rounds [{profile or config.board.profile}]"
    )
    console.print(f"Members: {', '.join(m.display_name for m in pool.members)}\n")
    sys.exit(asyncio.run(_run_board(service, deal_id, user_id, output_dir)))


@main.command()
@click.option("--user", "user_id", required=True)
@click.option("--plan", type=click.Choice([p.value for p in Plan]), default=Plan.PRO.value)
def credits(user_id: str, plan: str) -> None:
    """Show board credit status for a user."""
    config = _load_config_or_exit()
    gate = InMemoryCreditGate(config.credits, plans={user_id: Plan(plan)})
    status = asyncio.run(gate.status(user_id))

    table = Table(title=f"Board credits: {user_id}")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    for key, value in status.to_dict().items():
        if key != "user_id":
            table.add_row(key, str(value))
    console.print(table)


@main.command()
@click.option("--dossiers", "dossier_dir", default=None, help="Dossier folder (default: from config)")
def deals(dossier_dir: str | None) -> None:
    """List deals that have a dossier."""
    config = _load_config_or_exit()
    found = list_dossiers(Path(dossier_dir) if dossier_dir else config.board.dossier_dir)
    if not found:
        click.echo("No dossiers found.")
        return
    for deal_id in found:
        click.echo(deal_id)


@main.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8000, type=int)
def serve(host: str, port: int) -> None:
    """Serve the board over HTTP with server-sent events."""
    import uvicorn

    from dealboard.api import create_app

    config = _load_config_or_exit()
    try:
        service = build_service(config)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}. Check API keys in .env.")
        sys.exit(1)
    uvicorn.run(create_app(service), host=host, port=port)


if __name__ == "__main__":
    main()
