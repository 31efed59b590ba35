"""Deal dossiers: markdown files with YAML frontmatter, one per deal.

A dossier named ``<deal_id>.md`` carries the deal metadata and the Tier-1 /
Tier-2 results in its frontmatter and free-text findings in its body.
"""

import logging
import re
from pathlib import Path

import frontmatter
import yaml

from dealboard.errors import DealNotFound, InvalidDossier
from dealboard.models import AnalysisContext
from dealboard.stores import AnalysisResultsProvider, check_access

logger = logging.getLogger(__name__)

_DEAL_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _section(meta: dict, key: str, kind: type, file_path: Path):
    value = meta.get(key) or kind()
    if not isinstance(value, kind):
        raise InvalidDossier(f"{file_path.name}: '{key}' must be a {kind.__name__}, got {type(value).__name__}")
    return kind(value)


def parse_dossier(file_path: Path, deal_id: str | None = None) -> AnalysisContext:
    """Parse one dossier file into an AnalysisContext.

    Raises:
        InvalidDossier: Unreadable frontmatter or a section of the wrong shape.
    """
    try:
        post = frontmatter.load(str(file_path))
        meta = dict(post.metadata)
    except (yaml.YAMLError, ValueError, TypeError) as exc:
        raise InvalidDossier(f"Malformed dossier {file_path.name}: {exc}") from exc
    deal_id = deal_id or file_path.stem
    owner = meta.get("owner_id")
    return AnalysisContext(
        deal_id=deal_id,
        deal_name=str(meta.get("deal_name", deal_id)),
        company_name=str(meta.get("company_name", meta.get("deal_name", deal_id))),
        owner_id=str(owner) if owner is not None else None,
        sector=meta.get("sector"),
        stage=meta.get("stage"),
        findings=post.content.strip(),
        tier1=_section(meta, "tier1", dict, file_path),
        tier2=_section(meta, "tier2", dict, file_path),
        sources=_section(meta, "sources", list, file_path),
    )


def list_dossiers(dossier_dir: Path) -> list[str]:
    """Deal ids available in dossier_dir, sorted."""
    if not dossier_dir.is_dir():
        return []
    return sorted(p.stem for p in dossier_dir.glob("*.md"))


class DossierStore(AnalysisResultsProvider):
    """Loads deal findings from a directory of markdown dossiers."""

    def __init__(self, dossier_dir: Path) -> None:
        self._dir = dossier_dir

    async def load(self, deal_id: str, user_id: str) -> AnalysisContext:
        if not _DEAL_ID.match(deal_id):
            raise DealNotFound(f"Invalid deal id: {deal_id!r}")
        path = self._dir / f"{deal_id}.md"
        if not path.is_file():
            raise DealNotFound(f"Deal {deal_id} not found in {self._dir}")
        context = parse_dossier(path, deal_id)
        logger.debug("Loaded dossier %s (%d chars of findings)", path, len(context.findings))
        return check_access(context, user_id)
