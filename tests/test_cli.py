"""Tests for the click commands and service wiring in dealboard/cli.py."""

from dataclasses import replace
from pathlib import Path

import pytest
from click.testing import CliRunner

from config.config_loader import AppConfig, load_config
from dealboard import cli
from dealboard.cli import _check_and_filter_members, _run_board, build_service, main
from dealboard.events import EventType
from tests.conftest import MockCaller, board_callers, make_pool

DOSSIER = """---
deal_name: Acme Seed
owner_id: alice
sector: SaaS
---

Two repeat founders, 1.2M EUR ARR.
"""


@pytest.fixture
def dossier_dir(tmp_path: Path) -> Path:
    folder = tmp_path / "dossiers"
    folder.mkdir()
    (folder / "acme.md").write_text(DOSSIER, encoding="utf-8")
    return folder


@pytest.fixture
def app_config(monkeypatch, sample_prompts_config, sample_board_config) -> AppConfig:
    monkeypatch.delenv("BOARD_CONFIG", raising=False)
    config = load_config()
    return replace(config, prompts=sample_prompts_config, board=sample_board_config)


def test_deals_lists_dossiers(dossier_dir: Path):
    result = CliRunner().invoke(main, ["deals", "--dossiers", str(dossier_dir)])
    assert result.exit_code == 0
    assert result.output.strip() == "acme"


def test_deals_without_dossiers(tmp_path: Path):
    result = CliRunner().invoke(main, ["deals", "--dossiers", str(tmp_path / "none")])
    assert result.exit_code == 0
    assert "No dossiers found." in result.output


def test_credits_for_free_plan():
    result = CliRunner().invoke(main, ["credits", "--user", "bob", "--plan", "FREE"])
    assert result.exit_code == 0
    assert "can_use_board" in result.output
    assert "False" in result.output


def test_credits_rejects_unknown_plan():
    result = CliRunner().invoke(main, ["credits", "--user", "bob", "--plan", "GOLD"])
    assert result.exit_code != 0


async def test_build_service_runs_a_board(app_config, dossier_dir: Path, tmp_path: Path):
    service = build_service(app_config, make_pool(*board_callers()), dossier_dir, tmp_path / "out")

    stream = await service.start_board("acme", "alice")
    events = [event async for event in stream]

    assert events[-1].type is EventType.VERDICT_REACHED
    assert service.get_session(stream.session_id) is not None
    assert (tmp_path / "out" / "verdicts" / f"{stream.session_id}.md").exists()


async def test_run_board_saves_transcript(app_config, dossier_dir: Path, tmp_path: Path):
    service = build_service(app_config, make_pool(*board_callers()), dossier_dir, tmp_path / "out")

    code = await _run_board(service, "acme", "alice", tmp_path / "out")

    assert code == 0
    assert len(list((tmp_path / "out").glob("*_acme-seed_board.md"))) == 1


async def test_run_board_reports_rejection(app_config, dossier_dir: Path, tmp_path: Path):
    service = build_service(app_config, make_pool(*board_callers()), dossier_dir, tmp_path / "out")
    assert await _run_board(service, "acme", "mallory", tmp_path / "out") == 1
    assert not (tmp_path / "out").exists()


def test_run_command_end_to_end(monkeypatch, app_config, dossier_dir: Path, tmp_path: Path):
    monkeypatch.setattr(cli, "load_config", lambda: app_config)
    monkeypatch.setattr(cli, "build_pool", lambda config, profile=None: make_pool(*board_callers()))

    result = CliRunner().invoke(
        main,
        [
            "run", "acme",
            "--user", "alice",
            "--rounds", "1",
            "--dossiers", str(dossier_dir),
            "--output", str(tmp_path / "out"),
            "--skip-health-check",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Board verdict" in result.output
    assert app_config.board.debate_rounds == 1


def test_health_check_filter_keeps_working_members(monkeypatch):
    pool = make_pool(MockCaller("claude"), MockCaller("grok", fail_in=("ping",)))
    monkeypatch.setattr(cli.click, "confirm", lambda *args, **kwargs: True)

    filtered = _check_and_filter_members(pool)

    assert [m.id for m in filtered.members] == ["claude"]


def test_health_check_filter_exits_when_nobody_answers():
    pool = make_pool(MockCaller("claude", fail_in=("ping",)))
    with pytest.raises(SystemExit) as exc_info:
        _check_and_filter_members(pool)
    assert exc_info.value.code == 1
