# event_stream.py — account event loop: challenges in, game sessions out
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from bot_config import ChallengePolicy, EventLoopConfig
from botlog import log, log_exc
from challenge_filter import ChallengeRecord, DeclineReason, decide
from dispatcher import ContinuationToken, Dispatcher
from errors import RemoteCallError, TransientFeedError
from feeds import EventPump
from lichess_gateway import LichessGateway
from rate_limiter import RateLimiter


@dataclass
class ConsumerStats:
    events: int = 0
    accepted: int = 0
    declined: int = 0
    rate_limited: int = 0
    games_dispatched: int = 0
    duplicate_games: int = 0
    reconnects: int = 0


class EventStreamConsumer:
    """
    Reads the account event stream for at most `max_stream_life_mins`.

    Reaching the lifetime is a normal exit; whoever launched the consumer
    starts the next one. Drops are retried after `retry_wait_duration_secs`
    until the lifetime runs out. request_stop() closes the current feed, so
    a quiet-stream wait returns at once; the event in hand is still handled.
    """

    def __init__(
        self,
        policy: ChallengePolicy,
        gateway: LichessGateway,
        limiter: RateLimiter,
        dispatcher: Dispatcher,
        config: EventLoopConfig,
        clock: Callable[[], float] = time.monotonic,
        wait: Optional[Callable[[float], bool]] = None,
        pump_factory=EventPump,
    ):
        self.policy = policy
        self.bot_id = policy.identity.bot_id
        self.gateway = gateway
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.config = config
        self.stats = ConsumerStats()
        self._clock = clock
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._pump_factory = pump_factory
        self._pump_lock = threading.Lock()
        self._pump = None

    def request_stop(self):
        self._stop.set()
        with self._pump_lock:
            pump = self._pump
        if pump is not None:
            pump.close()

    def run(self) -> ConsumerStats:
        cfg = self.config
        deadline = self._clock() + cfg.max_stream_life_mins * 60.0
        log(f"Listening for events as {self.bot_id} for up to {cfg.max_stream_life_mins:g} min…", "🛰️")
        while not self._stop.is_set() and self._clock() < deadline:
            pump = self._pump_factory(self.gateway.stream_incoming_events, name="incoming-events")
            with self._pump_lock:
                self._pump = pump
            try:
                self._consume(pump, deadline)
            except TransientFeedError as e:
                pump.close()
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                self.stats.reconnects += 1
                pause = min(cfg.retry_wait_duration_secs, remaining)
                log(f"Incoming stream dropped ({e}); reconnecting in {pause:g}s…", "🔌")
                if self._wait(pause):
                    break
            finally:
                pump.close()
        log(
            f"Event stream lifetime over: {self.stats.events} events, {self.stats.accepted} accepted, "
            f"{self.stats.declined} declined, {self.stats.games_dispatched} games, "
            f"{self.stats.reconnects} reconnects",
            "⌛",
        )
        return self.stats

    def _consume(self, pump, deadline: float):
        gap = self.config.status_poll_gap_secs
        last_status_check = self._clock()
        while not self._stop.is_set():
            now = self._clock()
            if now >= deadline:
                return
            event = pump.get(min(gap, deadline - now))
            if event is None:
                if self._stop.is_set():
                    return
                now = self._clock()
                if now < deadline and now - last_status_check >= gap:
                    last_status_check = now
                    if not self._still_online():
                        raise TransientFeedError("server reports the bot offline; stream is stale")
                continue
            self.stats.events += 1
            try:
                self.handle(event)
            except Exception as e:
                log_exc("event_stream/handle", e)

    def _still_online(self) -> bool:
        try:
            return self.gateway.is_online(self.bot_id)
        except RemoteCallError as e:
            log(f"Status check failed: {e}; keeping the stream.", "❓")
            return True

    # ---- routing ----

    def handle(self, event: dict):
        et = (event.get("type") or "").strip()
        if et == "challenge":
            self._on_challenge(event.get("challenge") or {})
        elif et == "gameStart":
            self._on_game_start(event.get("game") or {})
        elif et == "gameFinish":
            g = event.get("game") or {}
            log(f"Game {g.get('gameId') or g.get('id')} finished.", "🏁")

    def _on_challenge(self, ch: dict):
        record = ChallengeRecord.from_event(ch)
        if record is None:
            return
        if record.opponent_id == self.bot_id:
            return  # our own outgoing challenge echoed back
        if record.dest_id and record.dest_id != self.bot_id:
            return
        if record.status not in ("created", "pending"):
            return

        decision = decide(record, self.policy)
        if not decision.accepted:
            self._decline(record, decision.reason)
            return

        reservation = self.limiter.reserve_for(record.opponent_id)
        if not reservation.granted:
            self.stats.rate_limited += 1
            log(
                f"Rate limit reached for {reservation.denied_scope} on {reservation.date_key}; "
                f"declining {record.opponent_id}.",
                "🚦",
            )
            self._decline(record, DeclineReason.RATE_LIMITED)
            return

        if self.gateway.accept_challenge(record.challenge_id):
            self.stats.accepted += 1
            log(f"Accepted challenge {record.challenge_id} from {record.opponent_id}", "🤝")
        else:
            self.limiter.release(reservation)

    def _decline(self, record: ChallengeRecord, reason: DeclineReason):
        self.stats.declined += 1
        log(
            f"Declined challenge {record.challenge_id} from {record.opponent_id}: "
            f"{reason.code} ({reason.category})",
            "⛔",
        )
        self.gateway.decline_challenge(record.challenge_id, reason=reason.lichess_key)

    def _on_game_start(self, g: dict):
        gid = g.get("gameId") or g.get("id")
        if not gid:
            return
        if not self.dispatcher.dispatch(ContinuationToken(game_id=gid)):
            self.stats.duplicate_games += 1
            log(f"Ignoring duplicate gameStart for {gid}", "🔁")
            return
        self.stats.games_dispatched += 1
        opp = (g.get("opponent") or {}).get("username") or (g.get("opponent") or {}).get("id") or "?"
        log(f"Game {gid} started vs {opp}; session dispatched.", "♟️", gid=gid)
