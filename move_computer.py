# move_computer.py — "compute a move" capability: local UCI engine or remote move function
from __future__ import annotations

import os
import random
from dataclasses import dataclass
from typing import Optional, Protocol

import chess
import chess.engine
import requests

from bot_config import MoveComputerConfig
from botlog import log
from compute_time_management import think_time
from errors import MoveComputerFailure


@dataclass(frozen=True)
class Clock:
    """Our side's clock as last reported by the server, in milliseconds."""

    remaining_ms: Optional[int] = None
    increment_ms: Optional[int] = None
    opponent_ms: Optional[int] = None
    initial_ms: Optional[int] = None


class MoveComputer(Protocol):
    def compute_move(self, board: chess.Board, clock: Clock) -> chess.Move:
        """A legal move for the side to move. Raises MoveComputerFailure otherwise."""
        ...


def _checked(board: chess.Board, mv: Optional[chess.Move], source: str) -> chess.Move:
    if mv is None or mv not in board.legal_moves:
        raise MoveComputerFailure(f"{source} returned {mv} which is not legal in {board.fen()}")
    return mv


class EngineMoveComputer:
    """
    Spawns the UCI engine lazily and keeps it for the life of one session
    invocation. Call close() when the invocation ends.
    """

    def __init__(self, config: MoveComputerConfig, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng
        self._engine: Optional[chess.engine.SimpleEngine] = None

    def _spawn(self) -> chess.engine.SimpleEngine:
        path = self.config.engine_path
        if not path or not os.path.exists(path):
            raise MoveComputerFailure(f"engine binary not found: {path or '(unset)'}")
        eng = chess.engine.SimpleEngine.popen_uci(path)

        def _set_opt(name: str, val) -> bool:
            """Set a UCI option if the engine advertises it."""
            if name not in eng.options:
                return False
            eng.configure({name: val})
            return True

        req_hash = self.config.hash_mb
        if "Hash" in eng.options and eng.options["Hash"].max is not None:
            req_hash = min(req_hash, int(eng.options["Hash"].max))

        _set_opt("Threads", self.config.threads)
        _set_opt("Hash", req_hash)
        _set_opt("Move Overhead", self.config.move_overhead_ms)
        if self.config.syzygy_path:
            _set_opt("SyzygyPath", self.config.syzygy_path)
        eng.ping()

        log(
            f"[UCI] engine={os.path.basename(path)} | Threads={self.config.threads} | Hash={req_hash} MB | "
            f"Overhead={self.config.move_overhead_ms} ms | SyzygyPath={'set' if self.config.syzygy_path else 'none'}",
            "⚙️",
        )
        return eng

    def compute_move(self, board: chess.Board, clock: Clock) -> chess.Move:
        try:
            if self._engine is None:
                self._engine = self._spawn()
            secs = think_time(
                clock.remaining_ms,
                clock.increment_ms,
                ply=len(board.move_stack),
                in_check=board.is_check(),
                forced=board.legal_moves.count() <= 2,
                base_minutes=(clock.initial_ms // 60000) if clock.initial_ms else None,
                overhead_ms=self.config.move_overhead_ms,
                rng=self._rng,
            )
            result = self._engine.play(board, chess.engine.Limit(time=secs))
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError, OSError) as e:
            self.close()
            raise MoveComputerFailure(f"engine failed: {e}") from e
        return _checked(board, result.move, "engine")

    def close(self):
        if self._engine is None:
            return
        try:
            self._engine.quit()
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError, OSError) as e:
            log(f"engine quit failed: {e}", "🧯")
        finally:
            self._engine = None


class RemoteMoveComputer:
    """
    Delegates to a move function over HTTP.

    Request:  {"movesPlayed": "e2e4 e7e5", "clockMillis": {"remaining": ms, "increment": ms}}
    Response: {"bestMove": "g1f3", ...}
    """

    def __init__(self, url: str, timeout_secs: float = 60.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_secs = timeout_secs
        self.session = session or requests.Session()

    def compute_move(self, board: chess.Board, clock: Clock) -> chess.Move:
        payload = {
            "movesPlayed": " ".join(m.uci() for m in board.move_stack),
            "clockMillis": {
                "remaining": int(clock.remaining_ms or 0),
                "increment": int(clock.increment_ms or 0),
            },
        }
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout_secs)
            resp.raise_for_status()
            best = (resp.json() or {}).get("bestMove")
        except (requests.RequestException, ValueError) as e:
            raise MoveComputerFailure(f"move function {self.url} failed: {e}") from e
        try:
            mv = chess.Move.from_uci(best or "")
        except ValueError:
            raise MoveComputerFailure(f"move function returned unparsable move {best!r}")
        return _checked(board, mv, "move function")

    def close(self):
        self.session.close()


def build_move_computer(config: MoveComputerConfig) -> MoveComputer:
    if config.kind == "remote":
        return RemoteMoveComputer(config.url, config.timeout_secs)
    return EngineMoveComputer(config)
