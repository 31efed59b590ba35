"""Load settings.yaml into typed dataclasses. Reports missing API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_PROFILES = ("test", "prod")


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    temperature: float | None = None


@dataclass
class MemberConfig:
    id: str
    display_name: str
    model_key: str
    color: str
    persona: str = ""


@dataclass
class PromptsConfig:
    system: str
    analysis: str
    debate: str
    vote: str


@dataclass
class BoardConfig:
    profile: str
    debate_rounds: int
    analysis_timeout_sec: float
    debate_timeout_sec: float
    vote_timeout_sec: float
    output_dir: Path
    dossier_dir: Path
    majority_threshold: Fraction = Fraction(2, 3)
    stop_on_consensus: bool = False
    stop_on_majority_stable: bool = False
    stop_on_stagnation: bool = False
    session_timeout_sec: float = 600.0


@dataclass
class CreditsConfig:
    max_concurrent_sessions: int = 1
    max_sessions_per_period: int = 2
    period_hours: float = 1.0
    monthly_allocation: dict[str, int] = field(
        default_factory=lambda: {"FREE": 0, "PRO": 5, "ENTERPRISE": 50}
    )


@dataclass
class AppConfig:
    board: BoardConfig
    credits: CreditsConfig
    models: dict[str, ModelConfig]
    rosters: dict[str, list[MemberConfig]]
    prompts: PromptsConfig
    available_models: set[str] = field(default_factory=set)

    def roster(self, profile: str | None = None) -> list[MemberConfig]:
        """Return the member list for a profile (default: the configured one)."""
        return self.rosters[profile or self.board.profile]


def parse_threshold(raw: str | float | int) -> Fraction:
    """Parse "2/3", "0.75" or 0.75 into an exact Fraction in (0, 1]."""
    value = Fraction(str(raw).strip())
    if not 0 < value <= 1:
        raise ValueError(f"majority_threshold must be in (0, 1], got {raw!r}")
    return value


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError on an
    unknown profile or a roster entry pointing at an undefined model.
    Logs missing API keys but does not raise: callers check
    available_models.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    board_raw = raw["board"]
    profile = os.environ.get("BOARD_CONFIG", "").strip() or str(board_raw.get("profile", "test"))
    if profile not in _PROFILES:
        raise ValueError(f"Unknown board profile: {profile!r} (expected one of {_PROFILES})")

    board = BoardConfig(
        profile=profile,
        debate_rounds=int(board_raw["debate_rounds"]),
        analysis_timeout_sec=float(board_raw["analysis_timeout_sec"]),
        debate_timeout_sec=float(board_raw["debate_timeout_sec"]),
        vote_timeout_sec=float(board_raw["vote_timeout_sec"]),
        output_dir=Path(board_raw["output_dir"]),
        dossier_dir=Path(board_raw["dossier_dir"]),
        majority_threshold=parse_threshold(board_raw.get("majority_threshold", "2/3")),
        stop_on_consensus=bool(board_raw.get("stop_on_consensus", False)),
        stop_on_majority_stable=bool(board_raw.get("stop_on_majority_stable", False)),
        stop_on_stagnation=bool(board_raw.get("stop_on_stagnation", False)),
        session_timeout_sec=float(board_raw.get("session_timeout_sec", 600)),
    )

    credits_raw = raw.get("credits", {})
    credits = CreditsConfig(
        max_concurrent_sessions=int(credits_raw.get("max_concurrent_sessions", 1)),
        max_sessions_per_period=int(credits_raw.get("max_sessions_per_period", 2)),
        period_hours=float(credits_raw.get("period_hours", 1)),
    )
    if "monthly_allocation" in credits_raw:
        credits.monthly_allocation = {
            str(k).upper(): int(v) for k, v in credits_raw["monthly_allocation"].items()
        }

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        system=prompts_raw["system"],
        analysis=prompts_raw["analysis"],
        debate=prompts_raw["debate"],
        vote=prompts_raw["vote"],
    )

    models: dict[str, ModelConfig] = {}
    available_models: set[str] = set()

    for model_key, model_raw in raw["models"].items():
        models[model_key] = ModelConfig(
            name=model_key,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
            temperature=model_raw.get("temperature"),
        )

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_models.add(model_key)
            logger.debug("Model available: %s", model_key)
        else:
            logger.info(
                "Model skipped (no API key): %s, set %s in .env",
                model_key,
                model_raw["api_key_env"],
            )

    personas_raw = raw.get("personas", {}) or {}
    rosters: dict[str, list[MemberConfig]] = {}
    for roster_name, entries in raw["rosters"].items():
        members: list[MemberConfig] = []
        for entry in entries:
            if entry["model_key"] not in models:
                raise ValueError(
                    f"Roster {roster_name!r} member {entry['id']!r} uses undefined model {entry['model_key']!r}"
                )
            members.append(
                MemberConfig(
                    id=str(entry["id"]),
                    display_name=str(entry["display_name"]),
                    model_key=str(entry["model_key"]),
                    color=str(entry.get("color", "#666666")),
                    persona=str(personas_raw.get(entry["id"], "")),
                )
            )
        rosters[str(roster_name)] = members

    if profile not in rosters:
        raise ValueError(f"No roster defined for profile {profile!r}")

    return AppConfig(
        board=board,
        credits=credits,
        models=models,
        rosters=rosters,
        prompts=prompts,
        available_models=available_models,
    )
