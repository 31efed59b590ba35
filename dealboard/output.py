"""Rich console output and markdown files for board sessions."""

import logging
import re
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from dealboard.events import EventType, ProgressEvent
from dealboard.models import AnalysisContext, BoardMember, Session, Verdict, VoteChoice
from dealboard.prompts import summarize_position
from dealboard.stores import PersistenceSink

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

CHOICE_STYLES = {
    VoteChoice.GO: "bold green",
    VoteChoice.NO_GO: "bold red",
    VoteChoice.NEED_MORE_INFO: "bold yellow",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(content: str, words: int = 50) -> str:
    all_words = summarize_position(content).split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


class EventPrinter:
    """Renders progress events to the console as they arrive."""

    def __init__(self, members: Sequence[BoardMember], target: Console | None = None) -> None:
        self._members = {m.id: m for m in members}
        self._console = target or console

    def _name(self, member_id: str | None) -> str:
        member = self._members.get(member_id or "")
        return member.display_name if member else str(member_id)

    def __call__(self, event: ProgressEvent) -> None:
        out = self._console
        if event.type is EventType.SESSION_STARTED:
            out.print(Rule(f"[bold cyan]{event.message}[/bold cyan]"))
        elif event.type is EventType.MEMBER_ANALYSIS_STARTED:
            out.print(f"[dim]  {self._name(event.member_id)} analyzing...[/dim]")
        elif event.type is EventType.MEMBER_ANALYSIS_COMPLETED:
            stance = event.payload.get("stance") or "?"
            out.print(f"  [green]✓[/green] {self._name(event.member_id)} initial view: {stance}")
        elif event.type is EventType.MEMBER_ANALYSIS_FAILED:
            phase = event.payload.get("phase", "analysis")
            out.print(
                f"  [red]✗[/red] {self._name(event.member_id)} dropped during {phase}: "
                f"{event.payload.get('detail', '')}"
            )
        elif event.type is EventType.DEBATE_ROUND_STARTED:
            out.print(Rule(f"[bold cyan]Debate round {event.round_number}[/bold cyan]"))
        elif event.type is EventType.DEBATE_RESPONSE:
            member = self._members.get(event.member_id or "")
            changed = " (changed position)" if event.payload.get("positionChanged") else ""
            out.print(
                Panel(
                    _preview(event.payload.get("content", "")),
                    title=f"[bold]{self._name(event.member_id)}[/bold]{changed}",
                    border_style=member.color if member else "dim",
                )
            )
        elif event.type is EventType.DEBATE_ROUND_COMPLETED:
            out.print(
                Text(
                    f"Round {event.round_number}: {len(event.payload.get('responded', []))} responded, "
                    f"{len(event.payload.get('failed', []))} dropped",
                    style="dim",
                )
            )
        elif event.type is EventType.VOTING_STARTED:
            out.print(Rule("[bold cyan]Final vote[/bold cyan]"))
        elif event.type is EventType.MEMBER_VOTED:
            choice = VoteChoice(event.payload["choice"])
            out.print(
                f"  {self._name(event.member_id)}: [{CHOICE_STYLES[choice]}]{choice.value}[/] "
                f"({event.payload.get('confidence', '?')}%)"
            )
        elif event.type is EventType.VERDICT_REACHED:
            out.print(Rule("[bold green]Verdict reached[/bold green]"))
        elif event.type is EventType.ERROR:
            out.print(f"[bold red]Session failed ({event.payload.get('reason')}):[/bold red] {event.message}")


def print_verdict(verdict: Verdict, members: Sequence[BoardMember]) -> None:
    """Print the verdict, the votes table and the key points."""
    names = {m.id: m.display_name for m in members}
    style = CHOICE_STYLES[verdict.final_choice]
    console.print(
        Panel(
            Text(f"{verdict.final_choice.value}  ·  {verdict.consensus_level.value}", style=style),
            title="[bold]Board verdict[/bold]",
            subtitle=(
                f"{verdict.total_rounds} round(s) · {verdict.stopping_reason} · "
                f"{verdict.duration_sec:.1f}s · {verdict.total_tokens} tokens"
            ),
        )
    )

    table = Table(title="Votes")
    table.add_column("Member")
    table.add_column("Vote")
    table.add_column("Confidence", justify="right")
    table.add_column("Rationale")
    for vote in verdict.votes:
        table.add_row(
            names.get(vote.member_id, vote.member_id),
            Text(vote.choice.value, style=CHOICE_STYLES[vote.choice]),
            f"{vote.confidence}%",
            vote.rationale,
        )
    console.print(table)

    for title, items in (
        ("Agreement points", verdict.agreement_points),
        ("Friction points", verdict.friction_points),
        ("Questions for the founder", verdict.questions_for_founder),
    ):
        if items:
            console.print(f"[bold]{title}[/bold]")
            for item in items:
                console.print(f"  • {item}")
    if verdict.failed_members:
        console.print(
            Text(f"Excluded members: {', '.join(names.get(m, m) for m in verdict.failed_members)}", style="dim")
        )


def verdict_markdown(verdict: Verdict, names: dict[str, str] | None = None) -> list[str]:
    names = names or {}
    lines = [
        f"## Verdict: {verdict.final_choice.value} ({verdict.consensus_level.value})",
        "",
        f"**Stopping reason:** {verdict.stopping_reason}",
        f"**Rounds:** {verdict.total_rounds}",
        f"**Tokens:** {verdict.total_tokens}",
        f"**Duration:** {verdict.duration_sec:.1f}s",
        "",
        "| Member | Vote | Confidence | Rationale |",
        "|---|---|---|---|",
    ]
    for vote in verdict.votes:
        rationale = vote.rationale.replace("|", "\\|").replace("\n", " ")
        lines.append(
            f"| {names.get(vote.member_id, vote.member_id)} | {vote.choice.value} | {vote.confidence}% | {rationale} |"
        )
    lines.append("")
    for title, items in (
        ("Agreement points", verdict.agreement_points),
        ("Friction points", verdict.friction_points),
        ("Questions for the founder", verdict.questions_for_founder),
    ):
        if items:
            lines += [f"### {title}", ""] + [f"- {item}" for item in items] + [""]
    if verdict.failed_members:
        lines += [f"*Excluded members: {', '.join(verdict.failed_members)}*", ""]
    return lines


def render_transcript(
    session: Session,
    context: AnalysisContext,
    events: Sequence[ProgressEvent],
    members: Sequence[BoardMember],
) -> str:
    """Full markdown transcript reconstructed from the session's event log."""
    names = {m.id: m.display_name for m in members}
    lines: list[str] = [
        f"# Board Session: {context.deal_name}",
        "",
        f"**Date:** {session.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Deal:** {session.deal_id} ({context.company_name})",
        f"**Members:** {', '.join(names.values())}",
        f"**Outcome:** {session.phase.value}",
        "",
        "---",
        "",
        "## Initial Analyses",
        "",
    ]
    for event in events:
        name = names.get(event.member_id or "", event.member_id)
        if event.type is EventType.MEMBER_ANALYSIS_COMPLETED:
            lines += [f"### {name}", "", event.payload.get("content", ""), ""]
        elif event.type is EventType.MEMBER_ANALYSIS_FAILED:
            lines += [f"*{name} dropped during {event.payload.get('phase')}: {event.payload.get('detail')}*", ""]
        elif event.type is EventType.DEBATE_ROUND_STARTED:
            lines += [f"## Debate Round {event.round_number}", ""]
        elif event.type is EventType.DEBATE_RESPONSE:
            changed = " (changed position)" if event.payload.get("positionChanged") else ""
            lines += [f"### {name}{changed}", "", event.payload.get("content", ""), ""]
        elif event.type is EventType.ERROR:
            lines += ["## Session failed", "", f"**Reason:** {event.payload.get('reason')}", "", event.message or "", ""]

    if session.verdict is not None:
        lines += verdict_markdown(session.verdict, names)
    return "\n".join(lines)


def save_transcript(
    session: Session,
    context: AnalysisContext,
    events: Sequence[ProgressEvent],
    members: Sequence[BoardMember],
    output_dir: Path,
) -> Path:
    """Write the transcript to output_dir and return its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = session.created_at.strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(context.deal_name)}_board.md"
    filepath.write_text(render_transcript(session, context, events, members), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath


class MarkdownPersistenceSink(PersistenceSink):
    """Writes one verdict record per completed session to a directory."""

    def __init__(self, output_dir: Path) -> None:
        self._dir = output_dir

    async def save(self, session: Session, verdict: Verdict) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        completed = session.completed_at or datetime.now()
        lines = [
            f"# Board verdict for deal {session.deal_id}",
            "",
            f"**Session:** {session.id}",
            f"**User:** {session.user_id}",
            f"**Completed:** {completed.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
        ] + verdict_markdown(verdict)
        filepath = self._dir / f"{session.id}.md"
        filepath.write_text("\n".join(lines), encoding="utf-8")
        logger.info("Verdict record saved to: %s", filepath)

    async def discard(self, session_id: str) -> None:
        (self._dir / f"{session_id}.md").unlink(missing_ok=True)
