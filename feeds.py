# feeds.py — timed reads from blocking NDJSON streams
from __future__ import annotations

import queue
import threading
from typing import Callable, Dict, Iterable, Optional

from errors import TransientFeedError
from lichess_gateway import is_transient_net_err

_EVENT, _END, _ERROR, _CLOSED = "event", "end", "error", "closed"


def _disconnect(source):
    disconnect = getattr(source, "disconnect", None)
    if disconnect is not None:
        disconnect()


class EventPump:
    """
    Drains a blocking event iterator on a daemon thread so every wait on it
    can time out.

    The source is opened on the pump thread, so a slow connect counts as
    silence rather than blocking the caller. close() stops the thread and
    drops the connection of sources that offer `disconnect()`.
    """

    def __init__(self, open_source: Callable[[], Iterable[Dict]], name: str = "feed"):
        self._queue: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._source = None
        self._closed = False
        self._thread = threading.Thread(target=self._pump, args=(open_source,), name=name, daemon=True)
        self._thread.start()

    def _pump(self, open_source):
        try:
            source = open_source()
            with self._lock:
                self._source = source
                closed = self._closed
            if closed:
                _disconnect(source)
                return
            for event in source:
                if self._closed:
                    return
                if event:
                    self._queue.put((_EVENT, event))
            self._queue.put((_END, None))
        except Exception as e:
            # Tearing the connection down makes the read fail; nobody is listening by then.
            if not self._closed:
                self._queue.put((_ERROR, e))

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            source = self._source
        self._queue.put((_CLOSED, None))
        if source is not None:
            _disconnect(source)

    def get(self, timeout: float) -> Optional[Dict]:
        """
        Next event, or None if nothing arrived within `timeout` seconds or the
        pump was closed (a blocked get() returns as soon as close() is called).

        Raises TransientFeedError when the stream closed or dropped; any other
        stream error is re-raised unchanged.
        """
        if self._closed:
            return None
        try:
            kind, payload = self._queue.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None
        if kind == _EVENT:
            return payload
        if kind == _CLOSED:
            return None
        if kind == _END:
            raise TransientFeedError("stream closed by server")
        if is_transient_net_err(payload):
            raise TransientFeedError(str(payload)) from payload
        raise payload
