"""Tests for the launcher's argument handling and wiring."""

from unittest.mock import patch

import pytest

import run_bot
from bot_config import BotConfig
from dispatcher import EmitDispatcher
from game_session import SessionOutcome, SessionStatus
from tests.fakes import FakeGateway


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("LICHESS_API_TOKEN", raising=False)
    path = tmp_path / "config.yml"
    path.write_text("token: abc\nbot:\n  bot_id: mybot\n", encoding="utf-8")
    return str(path)


def test_missing_config_exits_2(tmp_path):
    assert run_bot.main(["--config", str(tmp_path / "absent.yml"), "stream"]) == 2


def test_bad_token_exits_2(config_file):
    assert run_bot.main(["--config", config_file, "resume", "--token", '{"depth": 1}']) == 2


def test_missing_api_token(tmp_path, monkeypatch):
    monkeypatch.delenv("LICHESS_API_TOKEN", raising=False)
    path = tmp_path / "config.yml"
    path.write_text("bot:\n  bot_id: mybot\n", encoding="utf-8")
    assert run_bot.main(["--config", str(path), "stream"]) == 2


def test_resume_hands_continuation_to_emitter(monkeypatch):
    monkeypatch.delenv("LICHESS_API_TOKEN", raising=False)
    cfg = BotConfig.from_dict({"token": "abc", "bot": {"bot_id": "mybot"}})
    rt = run_bot.Runtime(cfg, gateway=FakeGateway())
    seen = {}

    def fake_run(self, token):
        seen["dispatcher"] = self.dispatcher
        return SessionOutcome(game_id=token.game_id, status=SessionStatus.COMPLETED, token=token)

    with patch("game_session.GameSession.run", fake_run):
        outcome = rt.run_session(run_bot.ContinuationToken("g1", depth=1), dispatcher=EmitDispatcher())

    assert outcome.status == SessionStatus.COMPLETED
    assert isinstance(seen["dispatcher"], EmitDispatcher)
