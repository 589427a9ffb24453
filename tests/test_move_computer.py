"""Tests for the engine and remote move computers."""

from unittest.mock import MagicMock

import chess
import chess.engine
import pytest
import requests

from bot_config import MoveComputerConfig
from errors import MoveComputerFailure
from move_computer import Clock, EngineMoveComputer, RemoteMoveComputer, build_move_computer


def _session_answering(payload=None, error=None):
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value.json.return_value = payload
    return session


class TestRemoteMoveComputer:
    def test_posts_moves_and_clock(self):
        session = _session_answering({"bestMove": "e7e5"})
        computer = RemoteMoveComputer("http://mf/move", timeout_secs=12, session=session)
        board = chess.Board()
        board.push_uci("e2e4")

        mv = computer.compute_move(board, Clock(remaining_ms=60000, increment_ms=1000))

        assert mv == chess.Move.from_uci("e7e5")
        session.post.assert_called_once_with(
            "http://mf/move",
            json={"movesPlayed": "e2e4", "clockMillis": {"remaining": 60000, "increment": 1000}},
            timeout=12,
        )

    def test_illegal_answer(self):
        computer = RemoteMoveComputer("http://mf/move", session=_session_answering({"bestMove": "e2e5"}))
        with pytest.raises(MoveComputerFailure):
            computer.compute_move(chess.Board(), Clock())

    def test_unparsable_answer(self):
        computer = RemoteMoveComputer("http://mf/move", session=_session_answering({"bestMove": None}))
        with pytest.raises(MoveComputerFailure):
            computer.compute_move(chess.Board(), Clock())

    def test_timeout(self):
        computer = RemoteMoveComputer("http://mf/move", session=_session_answering(error=requests.Timeout("slow")))
        with pytest.raises(MoveComputerFailure):
            computer.compute_move(chess.Board(), Clock())


class TestEngineMoveComputer:
    def test_missing_binary(self, tmp_path):
        computer = EngineMoveComputer(MoveComputerConfig(engine_path=str(tmp_path / "stockfish")))
        with pytest.raises(MoveComputerFailure):
            computer.compute_move(chess.Board(), Clock())
        computer.close()

    def test_uses_engine_answer(self):
        computer = EngineMoveComputer(MoveComputerConfig())
        engine = MagicMock()
        engine.play.return_value.move = chess.Move.from_uci("d2d4")
        computer._engine = engine

        mv = computer.compute_move(chess.Board(), Clock(remaining_ms=180000, increment_ms=2000, initial_ms=180000))

        assert mv == chess.Move.from_uci("d2d4")
        limit = engine.play.call_args[0][1]
        assert 0 < limit.time <= 30.0

    def test_engine_error_closes_engine(self):
        computer = EngineMoveComputer(MoveComputerConfig())
        engine = MagicMock()
        engine.play.side_effect = chess.engine.EngineTerminatedError("gone")
        computer._engine = engine

        with pytest.raises(MoveComputerFailure):
            computer.compute_move(chess.Board(), Clock())
        engine.quit.assert_called_once()
        assert computer._engine is None


def test_build_move_computer():
    assert isinstance(build_move_computer(MoveComputerConfig(kind="remote", url="http://mf")), RemoteMoveComputer)
    assert isinstance(build_move_computer(MoveComputerConfig()), EngineMoveComputer)
