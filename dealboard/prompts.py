"""Prompt assembly from configured templates, and parsing of member JSON output."""

import json
import re
from typing import Any

from config.config_loader import PromptsConfig
from dealboard.models import (
    AnalysisContext,
    BoardMember,
    DebateResponse,
    DebateRound,
    MemberAnalysis,
    MemberStatus,
    ModelResponse,
    Vote,
    VoteChoice,
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_BARE_JSON = re.compile(r"\{[\s\S]*\}")

# Documents and findings beyond this are cut to keep prompts bounded.
_MAX_FINDINGS_CHARS = 5000


def extract_json(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model reply.

    Accepts a bare object, a ```json fenced block, or an object surrounded
    by prose. Raises ValueError when none parses.
    """
    text = text.strip()
    candidates: list[str] = []
    if text.startswith("{"):
        candidates.append(text)
    candidates.extend(m.group(1) for m in _FENCED_JSON.finditer(text))
    bare = _BARE_JSON.search(text)
    if bare:
        candidates.append(bare.group())

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("no JSON object found in model output")


def parse_choice(raw: Any) -> VoteChoice:
    """Normalize "go", "No-Go", "need more info" etc. Raises ValueError."""
    if not isinstance(raw, str):
        raise ValueError(f"verdict must be a string, got {type(raw).__name__}")
    key = re.sub(r"[\s\-]+", "_", raw.strip().upper())
    return VoteChoice(key)


def _clamp_confidence(raw: Any) -> int:
    try:
        return max(0, min(100, int(float(raw))))
    except (TypeError, ValueError):
        return 50


def _strings(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(s.strip() for s in raw if isinstance(s, str) and s.strip())


def parse_analysis(response: ModelResponse) -> MemberAnalysis:
    """Analysis content is kept verbatim; the stance is read when present."""
    stance: VoteChoice | None = None
    try:
        stance = parse_choice(extract_json(response.content).get("verdict"))
    except ValueError:
        pass
    return MemberAnalysis(
        member_id=response.member_id,
        status=MemberStatus.SUCCEEDED,
        content=response.content,
        stance=stance,
    )


def parse_debate(response: ModelResponse) -> DebateResponse:
    stance: VoteChoice | None = None
    changed = False
    try:
        data = extract_json(response.content)
    except ValueError:
        data = {}
    changed = bool(data.get("positionChanged", False))
    if data.get("newVerdict"):
        try:
            stance = parse_choice(data["newVerdict"])
        except ValueError:
            stance = None
    return DebateResponse(
        member_id=response.member_id,
        content=response.content,
        stance=stance,
        position_changed=changed,
    )


def parse_vote(response: ModelResponse) -> Vote:
    """Strict: a vote without a recognizable verdict is unusable (ValueError)."""
    data = extract_json(response.content)
    choice = parse_choice(data.get("verdict"))
    key_factors = tuple(
        {k: str(v) for k, v in factor.items()}
        for factor in data.get("keyFactors", []) or []
        if isinstance(factor, dict) and factor.get("factor")
    )
    return Vote(
        member_id=response.member_id,
        choice=choice,
        rationale=str(data.get("justification", "")).strip(),
        confidence=_clamp_confidence(data.get("confidence", 50)),
        agreement_points=_strings(data.get("agreementPoints")),
        concerns=_strings(data.get("remainingConcerns")),
        key_factors=key_factors,
    )


def format_context(context: AnalysisContext) -> str:
    """Render the deal and its prior findings as prompt text."""
    sections = [f"# DEAL: {context.deal_name}\nCompany: {context.company_name}"]
    details = [f"{label}: {value}" for label, value in (("Sector", context.sector), ("Stage", context.stage)) if value]
    if details:
        sections[0] += "\n" + "\n".join(details)

    if context.findings:
        findings = context.findings
        if len(findings) > _MAX_FINDINGS_CHARS:
            findings = findings[:_MAX_FINDINGS_CHARS] + "\n[...truncated...]"
        sections.append(f"## FINDINGS\n{findings}")
    if context.tier1:
        sections.append(f"## TIER 1 RESULTS (screening)\n{json.dumps(context.tier1, indent=2, ensure_ascii=False)}")
    if context.tier2:
        sections.append(f"## TIER 2 RESULTS (deep analysis)\n{json.dumps(context.tier2, indent=2, ensure_ascii=False)}")
    if context.sources:
        lines = [
            f"- {s.get('source', 'unknown')} [{s.get('reliability', 'unknown')}]: "
            + ", ".join(str(p) for p in s.get("dataPoints", s.get("data_points", [])))
            for s in context.sources
        ]
        sections.append("## SOURCES\n" + "\n".join(lines))
    return "\n\n---\n\n".join(sections)


def summarize_position(content: str, max_chars: int = 1500) -> str:
    """Short rendering of a member's analysis or debate reply for other members."""
    try:
        data = extract_json(content)
    except ValueError:
        return content[:max_chars]

    lines: list[str] = []
    verdict = data.get("verdict") or data.get("newVerdict")
    if verdict:
        confidence = data.get("confidence", data.get("newConfidence"))
        lines.append(f"- Verdict: {verdict}" + (f" ({confidence}% confidence)" if confidence is not None else ""))
    if data.get("positionChanged"):
        lines.append("- Changed position this round")
    if data.get("justification"):
        lines.append(f"- Justification: {data['justification']}")
    for arg in data.get("arguments", []) or []:
        if isinstance(arg, dict) and arg.get("point"):
            lines.append(f"  * [{arg.get('strength', '?')}] {arg['point']}")
    for concern in data.get("concerns", []) or []:
        if isinstance(concern, dict) and concern.get("concern"):
            lines.append(f"  * concern [{concern.get('severity', '?')}] {concern['concern']}")
    for point in data.get("newPoints", []) or []:
        if isinstance(point, dict) and point.get("point"):
            lines.append(f"  * new point: {point['point']}")
    return "\n".join(lines)[:max_chars] if lines else content[:max_chars]


def build_system_prompt(member: BoardMember, prompts: PromptsConfig) -> str:
    return prompts.system.format(display_name=member.display_name, persona=member.persona)


def build_analysis_prompt(context: AnalysisContext, prompts: PromptsConfig) -> str:
    return prompts.analysis.format(deal=format_context(context))


def build_debate_prompt(
    context: AnalysisContext,
    prompts: PromptsConfig,
    round_number: int,
    own_content: str,
    others: list[tuple[BoardMember, str]],
) -> str:
    others_block = "\n\n".join(
        f"### {member.display_name} (id: {member.id})\n{summarize_position(content)}"
        for member, content in others
    ) or "(no other live members)"
    return prompts.debate.format(
        round=round_number,
        deal=format_context(context),
        own_position=summarize_position(own_content),
        others=others_block,
    )


def build_vote_prompt(
    context: AnalysisContext,
    prompts: PromptsConfig,
    rounds: list[DebateRound],
    names: dict[str, str],
) -> str:
    if rounds:
        history = "\n\n".join(
            f"### Round {rnd.round_number}\n"
            + "\n".join(
                f"**{names.get(r.member_id, r.member_id)}**: {summarize_position(r.content, 600)}"
                for r in rnd.responses
            )
            for rnd in rounds
        )
    else:
        history = "(no debate took place)"
    return prompts.vote.format(deal=format_context(context), history=history)
