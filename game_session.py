# game_session.py — supervises one game across bounded-duration invocations
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Tuple

import chess

from bot_config import GameFunctionConfig
from botlog import game_log_close, game_log_open, game_log_write, log, log_exc
from dispatcher import ContinuationToken, Dispatcher
from errors import (
    MoveRejected,
    NotAParticipant,
    OpponentStall,
    RecursionBudgetExceeded,
    RemoteCallError,
    TransientFeedError,
)
from feeds import EventPump
from lichess_gateway import LichessGateway, swallow_or_log, to_ms
from move_computer import Clock, MoveComputer
from opening_book import OpeningBook

RUNNING_STATUSES = {"created", "started"}


class SessionStatus(Enum):
    WAITING_FOR_OPPONENT = "waitingForOpponent"
    OUR_TURN = "ourTurn"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class GameState:
    """Authoritative game state as last reported by the game stream."""

    game_id: str
    our_color: chess.Color
    initial_fen: str = chess.STARTING_FEN
    board: chess.Board = field(default_factory=chess.Board)
    clock: Clock = field(default_factory=Clock)
    status: str = "started"

    @classmethod
    def from_game_full(cls, event: dict, bot_id: str) -> "GameState":
        white = ((event.get("white") or {}).get("id") or "").lower()
        black = ((event.get("black") or {}).get("id") or "").lower()
        if white == bot_id:
            color = chess.WHITE
        elif black == bot_id:
            color = chess.BLACK
        else:
            raise NotAParticipant(f"{bot_id} is not playing in {event.get('id')} ({white} vs {black})")
        fen = event.get("initialFen") or "startpos"
        clk = event.get("clock") or {}
        state = cls(
            game_id=event.get("id") or "",
            our_color=color,
            initial_fen=chess.STARTING_FEN if fen == "startpos" else fen,
            clock=Clock(initial_ms=to_ms(clk.get("initial"))),
        )
        state.sync(event.get("state") or {})
        return state

    def sync(self, st: dict):
        """Rebuild the board from the full move list; nothing is carried over from the previous board."""
        board = chess.Board(self.initial_fen)
        for uci in (st.get("moves") or "").split():
            board.push_uci(uci)
        self.board = board
        self.status = (st.get("status") or "started").lower()
        wtime, btime = to_ms(st.get("wtime")), to_ms(st.get("btime"))
        winc, binc = to_ms(st.get("winc")), to_ms(st.get("binc"))
        white = self.our_color == chess.WHITE
        self.clock = Clock(
            remaining_ms=wtime if white else btime,
            increment_ms=winc if white else binc,
            opponent_ms=btime if white else wtime,
            initial_ms=self.clock.initial_ms,
        )

    @property
    def ply(self) -> int:
        return len(self.board.move_stack)

    @property
    def is_over(self) -> bool:
        return self.status not in RUNNING_STATUSES

    @property
    def our_turn(self) -> bool:
        return not self.is_over and self.board.turn == self.our_color and not self.board.is_game_over()

    @property
    def opponent_has_moved(self) -> bool:
        return self.ply >= (2 if self.our_color == chess.WHITE else 1)


@dataclass(frozen=True)
class SessionOutcome:
    game_id: str
    status: SessionStatus
    token: ContinuationToken
    handed_off: Optional[ContinuationToken] = None
    forfeited: bool = False
    moves_played: int = 0
    reason: str = ""


class GameSession:
    """
    One invocation of the game supervisor.

    The invocation resynchronises from the game stream's gameFull snapshot,
    plays whenever it is our turn, and before every blocking wait checks
    two deadlines: the hand-off point (invocation ceiling minus margin) and
    the opponent-stall point. Passing the first dispatches a continuation
    token; passing the second aborts the game.
    """

    def __init__(
        self,
        bot_id: str,
        gateway: LichessGateway,
        move_computer: MoveComputer,
        dispatcher: Dispatcher,
        config: GameFunctionConfig,
        opening_book: Optional[OpeningBook] = None,
        book_max_depth: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        pump_factory=EventPump,
    ):
        self.bot_id = bot_id.lower()
        self.gateway = gateway
        self.move_computer = move_computer
        self.dispatcher = dispatcher
        self.config = config
        self.opening_book = opening_book
        self.book_max_depth = book_max_depth
        self._clock = clock
        self._sleep = sleep
        self._pump_factory = pump_factory
        self._pump = None

        self.state: Optional[GameState] = None
        self.phase = SessionStatus.WAITING_FOR_OPPONENT
        self._token: Optional[ContinuationToken] = None
        self._started = 0.0
        self._moves_played = 0
        # Ply at which our last move was accepted; a state still showing that ply is stale.
        self._submitted_ply: Optional[int] = None

    # ---- entry point ----

    def run(self, token: ContinuationToken) -> SessionOutcome:
        gid = token.game_id
        self._token = token
        self._started = self._clock()
        self._moves_played = 0
        self._submitted_ply = None
        game_log_open(gid)
        game_log_write(gid, {"type": "session_start", "depth": token.depth, "elapsed_secs": token.elapsed_secs})
        log(f"Supervising {gid} (depth {token.depth}/{self.config.max_recursion_depth})", "🛰️", gid=gid)

        try:
            if token.depth > self.config.max_recursion_depth:
                raise RecursionBudgetExceeded(gid, token.depth, self.config.max_recursion_depth)
            outcome = self._supervise()
        except RecursionBudgetExceeded as e:
            outcome = self._forfeit(e)
        except NotAParticipant as e:
            # Not our game: nothing to abort or resign.
            log(f"Leaving {gid}: {e}", "⚠️", gid=gid)
            outcome = self._outcome(SessionStatus.ABORTED, reason=str(e))
        except OpponentStall as e:
            log(f"Opponent stalled: {e}; aborting.", "⏳", gid=gid)
            self._end_game("opponent stall")
            outcome = self._outcome(SessionStatus.ABORTED, reason=str(e))
        except MoveRejected as e:
            log(
                f"Server rejected our move {e.uci}; fatal. fen={e.fen} "
                f"moves={' '.join(m.uci() for m in self.state.board.move_stack) if self.state else ''}",
                "🛑",
                gid=gid,
            )
            log_exc("make_move", e.cause, gid=gid)
            self._end_game("move rejected")
            outcome = self._outcome(SessionStatus.ABORTED, reason=str(e))
        except Exception as e:
            # MoveComputerFailure lands here too: never guess a move, give the game up.
            log_exc("game session", e, gid=gid)
            self._end_game(type(e).__name__)
            outcome = self._outcome(SessionStatus.ABORTED, reason=str(e))

        if outcome.handed_off is None:
            game_log_write(gid, {"type": "game_end", "status": outcome.status.value, "reason": outcome.reason})
            log(f"Finished game {gid}: {outcome.status.value} {outcome.reason}".rstrip(), "🏁", gid=gid)
        game_log_close(gid)
        return outcome

    # ---- supervision loop ----

    def _supervise(self) -> SessionOutcome:
        gid = self._token.game_id
        cfg = self.config
        handoff_at = self._started + cfg.invocation_limit_secs - cfg.handoff_margin_secs
        pump = self._open_feed()
        last_activity = self._started

        try:
            while True:
                now = self._clock()
                if now >= handoff_at:
                    return self._hand_off(now)
                stall_at = last_activity + self._stall_allowance()
                if now >= stall_at:
                    raise OpponentStall(gid, now - last_activity)

                try:
                    event = pump.get(min(handoff_at, stall_at) - now)
                except TransientFeedError as e:
                    log(f"Game stream dropped ({e}); reconnecting…", "🔌", gid=gid)
                    self._close_feed()
                    self._sleep(max(0.0, min(cfg.retry_wait_duration_secs, handoff_at - self._clock())))
                    pump = self._open_feed()
                    continue
                if event is None or not self._apply(event):
                    continue

                last_activity = self._clock()
                state = self.state
                if state.is_over:
                    log(f"Terminal update: {state.status}", "🔚", gid=gid)
                    return self._outcome(SessionStatus.COMPLETED, reason=state.status)
                if state.our_turn and state.ply != self._submitted_ply:
                    self.phase = SessionStatus.OUR_TURN
                    if not self._play_turn():
                        # Unknown whether the move landed; a fresh gameFull tells us.
                        pump = self._open_feed()
                    last_activity = self._clock()
                self.phase = SessionStatus.WAITING_FOR_OPPONENT
        finally:
            self._close_feed()

    def _open_feed(self):
        """Open a fresh game stream, dropping the one in use."""
        gid = self._token.game_id
        self._close_feed()
        self._pump = self._pump_factory(lambda: self.gateway.stream_game_state(gid), name=f"stream-{gid}")
        return self._pump

    def _close_feed(self):
        if self._pump is not None:
            self._pump.close()
            self._pump = None

    def _apply(self, event: dict) -> bool:
        kind = (event.get("type") or "").strip()
        if kind == "gameFull":
            self.state = GameState.from_game_full(event, self.bot_id)
            return True
        if kind == "gameState" and self.state is not None:
            self.state.sync(event)
            return True
        return False  # chatLine, opponentGone, ...

    def _stall_allowance(self) -> float:
        """Silence we tolerate; once the opponent has moved, their remaining clock is added on top."""
        allowance = float(self.config.abort_after_secs)
        st = self.state
        if st is not None and st.opponent_has_moved and st.clock.opponent_ms:
            allowance += st.clock.opponent_ms / 1000.0
        return allowance

    # ---- our turn ----

    def choose_move(self, board: chess.Board, clock: Clock) -> Tuple[chess.Move, str]:
        mv = self._book_move(board)
        if mv is not None:
            return mv, "book"
        return self.move_computer.compute_move(board, clock), "engine"

    def _book_move(self, board: chess.Board) -> Optional[chess.Move]:
        if self.opening_book is None or len(board.move_stack) > self.book_max_depth:
            return None
        try:
            candidates = self.opening_book.lookup(board)
        except Exception as e:
            log_exc("opening book lookup", e, gid=self._token.game_id if self._token else None)
            return None
        for uci in candidates:
            try:
                mv = chess.Move.from_uci(uci)
            except ValueError:
                continue
            if mv in board.legal_moves:
                return mv
        return None

    def _play_turn(self) -> bool:
        """Returns False when the submission's fate is unknown (no response from the server)."""
        gid = self._token.game_id
        state = self.state
        board = state.board
        mv, source = self.choose_move(board, state.clock)
        try:
            self.gateway.make_move(gid, mv.uci())
        except RemoteCallError as e:
            if e.status_code is None:
                log(f"make_move {mv.uci()}: no response; resyncing before trying again.", "🔌", gid=gid)
                return False
            raise MoveRejected(gid, mv.uci(), board.fen(), e) from e
        self._submitted_ply = len(board.move_stack)
        board.push(mv)
        self._moves_played += 1
        log(f"{source.capitalize()} move {board.fullmove_number}: {mv.uci()}", "📖" if source == "book" else "♟️", gid=gid)
        game_log_write(gid, {
            "type": "move_played",
            "uci": mv.uci(),
            "source": source,
            "ply": len(board.move_stack),
            "our_clock_ms_before": state.clock.remaining_ms,
        })
        return True

    # ---- leaving ----

    def _hand_off(self, now: float) -> SessionOutcome:
        gid = self._token.game_id
        nxt = self._token.next(now - self._started)
        if nxt.depth > self.config.max_recursion_depth:
            raise RecursionBudgetExceeded(gid, nxt.depth, self.config.max_recursion_depth)
        log(
            f"Invocation budget spent after {now - self._started:.0f}s; handing off "
            f"(depth {nxt.depth}/{self.config.max_recursion_depth})",
            "🔁",
            gid=gid,
        )
        game_log_write(gid, {"type": "handoff", "depth": nxt.depth, "elapsed_secs": nxt.elapsed_secs})
        try:
            self.dispatcher.dispatch(nxt)
        except Exception as e:
            log_exc("dispatch continuation", e, gid=gid)
            self._end_game("continuation dispatch failed")
            return self._outcome(SessionStatus.ABORTED, reason=f"dispatch failed: {e}")
        return self._outcome(self.phase, handed_off=nxt)

    def _forfeit(self, e: RecursionBudgetExceeded) -> SessionOutcome:
        gid = e.game_id
        log(f"FORFEIT: {e}", "🛑", gid=gid)
        game_log_write(gid, {
            "type": "forfeit",
            "depth": e.depth,
            "max_depth": e.max_depth,
            "elapsed_secs": self._token.elapsed_secs + (self._clock() - self._started),
        })
        self._end_game("recursion budget exceeded")
        return self._outcome(SessionStatus.ABORTED, forfeited=True, reason=str(e))

    def _end_game(self, why: str):
        """Abort while the game is still abortable, otherwise resign."""
        gid = self._token.game_id
        abortable = self.state is None or self.state.ply < 2
        actions = [("abort", self.gateway.abort_game)] if abortable else []
        actions.append(("resign", self.gateway.resign_game))
        for name, fn in actions:
            try:
                fn(gid)
            except RemoteCallError as e:
                swallow_or_log(f"{name}_game", e, f"({why})", gid=gid)
                continue
            log(f"Game {name}ed ({why}).", "🏳️", gid=gid)
            return

    def _outcome(self, status: SessionStatus, **kwargs) -> SessionOutcome:
        if status in (SessionStatus.COMPLETED, SessionStatus.ABORTED):
            self.phase = status
        return SessionOutcome(
            game_id=self._token.game_id,
            status=status,
            token=self._token,
            moves_played=self._moves_played,
            **kwargs,
        )
