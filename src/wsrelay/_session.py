from __future__ import annotations

import threading

from typing_extensions import Protocol

from ._messages import SessionClosedError, SessionId


class Transport(Protocol):
    """Runtime-specific writer for one connection.

    `send()` should raise on any failure, including when `timeout` elapses
    before the frame is written. `close()` should be idempotent."""

    def send(self, payload: str, timeout: float) -> None: ...

    def close(self) -> None: ...


class Session:
    """Handle for one open connection. Created by the hub on connect."""

    def __init__(self, session_id: SessionId, transport: Transport) -> None:
        self.session_id = session_id
        self._transport = transport
        self._open = True
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "open" if self._open else "closed"
        return f"Session({self.session_id}, {state})"

    @property
    def is_open(self) -> bool:
        return self._open

    def send(self, payload: str, timeout: float) -> None:
        """Write a text frame. A failed write closes the session before the
        error is re-raised."""
        if not self._open:
            raise SessionClosedError(f"Session {self.session_id} is closed")
        try:
            self._transport.send(payload, timeout)
        except Exception:
            self.close()
            raise

    def close(self) -> None:
        with self._lock:
            if not self._open:
                return
            self._open = False
        self._transport.close()
