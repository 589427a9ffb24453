# lichess_gateway.py — the slice of the Lichess API the bot drives, with retries
from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional

import berserk
import requests
from berserk.exceptions import ApiError
from requests.exceptions import ChunkedEncodingError, ConnectionError, HTTPError, ReadTimeout

from botlog import log, log_exc
from errors import RemoteCallError

RECONNECT_DELAY_SEC = 5.0
MAX_NET_RETRIES = 6
BACKOFF_429_START = 60
BACKOFF_429_CAP = 1800

_TRANSIENT_FRAGMENTS = (
    "remote end closed connection",
    "connection aborted",
    "protocolerror",
    "temporarily unavailable",
    "gateway timeout",
    "bad gateway",
    "connection reset",
    "api timeout",
    "timeouterror",
)


def is_transient_net_err(e: Exception) -> bool:
    if isinstance(e, (ConnectionError, ReadTimeout, ChunkedEncodingError)):
        return True
    s = str(e).lower()
    return any(frag in s for frag in _TRANSIENT_FRAGMENTS)


def status_code(e: Exception) -> Optional[int]:
    code = getattr(e, "status_code", None)
    if code is None:
        code = getattr(getattr(e, "response", None), "status_code", None)
    return code if isinstance(code, int) else None


def is_404(e: Exception) -> bool:
    if status_code(e) == 404:
        return True
    msg = str(e).lower()
    return "404" in msg or "not found" in msg


def swallow_or_log(where: str, e: Exception, context: str = "", gid: Optional[str] = None) -> bool:
    """Returns True if the error is an 'already gone' 404 race we can ignore."""
    if is_404(e):
        log(f"{where}: 404 not found {context} — ignoring.", "ℹ️", gid=gid)
        return True
    log_exc(where, e, gid=gid)
    return False


def to_ms(value) -> Optional[int]:
    """Convert a Lichess clock field to milliseconds int, or None if invalid."""
    if value is None:
        return None
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(float(str(value)))
    except ValueError:
        return None


class FeedStream:
    """
    A streaming endpoint opened on its own HTTP session.

    disconnect() may be called from any thread: it closes the streaming
    response so the reader blocked on it fails, then closes the session.
    """

    def __init__(self, session: requests.Session, open_events: Callable[[berserk.Client], Iterator[Dict]]):
        self._session = session
        self._open_events = open_events
        self._responses: List[requests.Response] = []
        self._lock = threading.Lock()
        self._closed = False
        session.hooks["response"].append(self._track)

    def _track(self, response, *args, **kwargs):
        with self._lock:
            self._responses.append(response)
            closed = self._closed
        if closed:
            response.close()
        return response

    def __iter__(self):
        return iter(self._open_events(berserk.Client(session=self._session)))

    def disconnect(self):
        with self._lock:
            self._closed = True
            responses, self._responses = self._responses, []
        for response in responses:
            response.close()
        self._session.close()


class LichessGateway:
    """
    Wraps a berserk client. Request/response calls go through `_retry_call`
    and fail with RemoteCallError. Streams are not retried; the caller owns
    reconnect policy and drops a stream through its FeedStream.
    """

    def __init__(
        self,
        client: berserk.Client,
        reconnect_delay: float = RECONNECT_DELAY_SEC,
        max_net_retries: int = MAX_NET_RETRIES,
        sleep=time.sleep,
        session_factory: Optional[Callable[[], requests.Session]] = None,
    ):
        self.client = client
        # Streams get a session each so they can be dropped one by one; without a factory they share `client`.
        self._session_factory = session_factory
        self.reconnect_delay = reconnect_delay
        self.max_net_retries = max_net_retries
        self._sleep = sleep
        self._http_lock = threading.Lock()

    @classmethod
    def from_token(cls, token: str, **kwargs) -> "LichessGateway":
        session = berserk.TokenSession(token)
        return cls(berserk.Client(session=session), session_factory=lambda: berserk.TokenSession(token), **kwargs)

    def _retry_call(self, desc: str, fn, *args, gid=None, retry_transient=True, **kwargs):
        """
        Serialise the call; back off on 429, retry transient network errors a bounded number of times.

        With retry_transient=False the first transient error fails at once with
        no status code: the request may have landed, so only the caller can tell.
        """
        attempt = 0
        backoff_429 = BACKOFF_429_START
        while True:
            try:
                with self._http_lock:
                    return fn(*args, **kwargs)
            except (ApiError, HTTPError, ConnectionError, ReadTimeout, ChunkedEncodingError) as e:
                code = status_code(e)
                if code == 429:
                    retry_after = backoff_429
                    resp = getattr(e, "response", None)
                    if resp is not None:
                        try:
                            retry_after = int(resp.headers.get("Retry-After", retry_after))
                        except (AttributeError, TypeError, ValueError):
                            pass
                    log(f"{desc}: 429 Too Many Requests. Sleeping {retry_after}s before retry…", "⚠️", gid=gid)
                    self._sleep(retry_after)
                    backoff_429 = min(backoff_429 * 2, BACKOFF_429_CAP)
                    continue
                if code is None and is_transient_net_err(e):
                    attempt += 1
                    if not retry_transient or attempt > self.max_net_retries:
                        raise RemoteCallError(desc, None, e) from e
                    log(
                        f"{desc}: transient net error; retry {attempt}/{self.max_net_retries} "
                        f"after {self.reconnect_delay:.0f}s",
                        "🔁",
                        gid=gid,
                    )
                    self._sleep(self.reconnect_delay)
                    continue
                raise RemoteCallError(desc, code, e) from e

    # ---- account / streams ----

    def account_id(self) -> str:
        return ((self._retry_call("account", self.client.account.get) or {}).get("id") or "").lower()

    def _stream(self, open_events: Callable[[berserk.Client], Iterator[Dict]]):
        if self._session_factory is None:
            return open_events(self.client)
        return FeedStream(self._session_factory(), open_events)

    def stream_incoming_events(self):
        return self._stream(lambda c: c.bots.stream_incoming_events())

    def stream_game_state(self, game_id: str):
        return self._stream(lambda c: c.bots.stream_game_state(game_id))

    def is_online(self, user_id: str) -> bool:
        statuses = self._retry_call("user_status", self.client.users.get_realtime_statuses, user_id) or []
        for st in statuses:
            if (st.get("id") or "").lower() == user_id.lower():
                return bool(st.get("online", False))
        return False

    # ---- challenges ----

    def accept_challenge(self, challenge_id: str) -> bool:
        """False when the accept did not go through (challenge withdrawn, server refused)."""
        try:
            self._retry_call("accept_challenge", self.client.bots.accept_challenge, challenge_id)
        except RemoteCallError as e:
            swallow_or_log("accept_challenge", e, f"(cid={challenge_id})")
            return False
        return True

    def decline_challenge(self, challenge_id: str, reason: str = "generic") -> None:
        try:
            self._retry_call("decline_challenge", self.client.bots.decline_challenge, challenge_id, reason=reason)
        except RemoteCallError as e:
            swallow_or_log("decline_challenge", e, f"(cid={challenge_id})")

    def create_challenge(self, username: str, rated: bool, limit: int, increment: int) -> None:
        self._retry_call(
            "challenge_create",
            self.client.challenges.create,
            username,
            rated=rated,
            clock_limit=limit,
            clock_increment=increment,
            color="random",
        )

    def online_bots(self, limit: int = 200) -> List[Dict]:
        # The client yields lazily; drain inside the retry so stream errors are retried too.
        return self._retry_call("online_bots", lambda: list(self.client.bots.get_online_bots(limit=limit)))

    def rating(self, username: str, perf_key: str) -> Optional[int]:
        data = self._retry_call("public_data", self.client.users.get_public_data, username) or {}
        rating = ((data.get("perfs") or {}).get(perf_key) or {}).get("rating")
        return int(rating) if isinstance(rating, (int, float)) else None

    # ---- games ----

    def make_move(self, game_id: str, uci: str) -> None:
        # Not retried: a lost response may hide an accepted move.
        self._retry_call("make_move", self.client.bots.make_move, game_id, uci, gid=game_id, retry_transient=False)

    def abort_game(self, game_id: str) -> None:
        self._retry_call("abort_game", self.client.bots.abort_game, game_id, gid=game_id)

    def resign_game(self, game_id: str) -> None:
        self._retry_call("resign_game", self.client.bots.resign_game, game_id, gid=game_id)
