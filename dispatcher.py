# dispatcher.py — continuation tokens and the in-process session dispatcher
from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Protocol, Set

from botlog import log, log_exc


@dataclass(frozen=True)
class ContinuationToken:
    """Everything a fresh invocation needs to pick a game back up; all other state comes from the server."""

    game_id: str
    depth: int = 0
    elapsed_secs: float = 0.0

    def next(self, invocation_secs: float) -> "ContinuationToken":
        return replace(self, depth=self.depth + 1, elapsed_secs=self.elapsed_secs + max(0.0, invocation_secs))

    def to_json(self) -> str:
        return json.dumps(
            {"gameId": self.game_id, "depth": self.depth, "elapsedSecs": round(self.elapsed_secs, 3)},
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "ContinuationToken":
        data = json.loads(raw)
        game_id = (data.get("gameId") or "").strip()
        depth = int(data.get("depth", 0))
        if not game_id:
            raise ValueError(f"continuation token without gameId: {raw}")
        if depth < 0:
            raise ValueError(f"continuation token with negative depth: {raw}")
        return cls(game_id=game_id, depth=depth, elapsed_secs=float(data.get("elapsedSecs", 0.0)))


class Dispatcher(Protocol):
    def dispatch(self, token: ContinuationToken) -> bool:
        """
        Schedule GameSession.run(token) on a fresh invocation shortly.

        Must never let two supervisors run for one game id. Returns False
        when a depth-0 token names a game that is already supervised.
        """
        ...


class EmitDispatcher:
    """Hands continuation tokens to an outside scheduler as one JSON line each."""

    def __init__(self, emit: Callable[[str], object] = print):
        self._emit = emit
        self.emitted = []

    def dispatch(self, token: ContinuationToken) -> bool:
        self.emitted.append(token)
        self._emit(token.to_json())
        return True


class ThreadDispatcher:
    """
    One thread per session invocation.

    A game id is claimed on its first dispatch and stays claimed across
    hand-offs; the claim is released when an invocation ends without
    handing off.
    """

    def __init__(
        self,
        run_session: Callable[[ContinuationToken], object],
        delay_secs: float = 1.0,
        sleep=time.sleep,
    ):
        self._run_session = run_session
        self.delay_secs = delay_secs
        self._sleep = sleep
        self._active: Set[str] = set()
        self._cond = threading.Condition()

    def is_active(self, game_id: str) -> bool:
        with self._cond:
            return game_id in self._active

    def active_count(self) -> int:
        with self._cond:
            return len(self._active)

    def dispatch(self, token: ContinuationToken) -> bool:
        with self._cond:
            if token.depth == 0 and token.game_id in self._active:
                return False
            self._active.add(token.game_id)
        t = threading.Thread(
            target=self._invoke,
            args=(token,),
            name=f"game-{token.game_id}-{token.depth}",
        )
        t.start()
        return True

    def _invoke(self, token: ContinuationToken):
        handed_off = False
        try:
            if self.delay_secs > 0:
                self._sleep(self.delay_secs)
            outcome = self._run_session(token)
            handed_off = getattr(outcome, "handed_off", None) is not None
        except Exception as e:
            log_exc("game session", e, gid=token.game_id)
        finally:
            if not handed_off:
                self._release(token.game_id)

    def _release(self, game_id: str):
        with self._cond:
            self._active.discard(game_id)
            self._cond.notify_all()
        log(f"Released supervision of {game_id}", "🏁", gid=game_id)

    def wait_idle(self, timeout: float = None) -> bool:
        """Block until no game is supervised. False if `timeout` ran out first."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._active, timeout=timeout)
