from __future__ import annotations

import functools
import inspect
import threading
import time
import warnings
import weakref
from typing import Callable, Dict, List, Optional, Tuple, TypeVar, Union

import rich

from ._messages import (
    ConsumerUnavailable,
    HubClosedError,
    HubError,
    Message,
    SendFailed,
    SessionClosedError,
    SessionId,
)
from ._session import Session, Transport
from ._threadpool_exceptions import call_and_print_errors

ConsumerCallback = Callable[[SessionId, Message], None]
ErrorCallback = Callable[[HubError], None]

TConsumer = TypeVar("TConsumer", bound=ConsumerCallback)
TErrorCallback = TypeVar("TErrorCallback", bound=ErrorCallback)


class BroadcastHub:
    """Tracks open sessions, relays inbound messages to a single consumer, and
    fans out broadcasts to every open session.

    The hub is transport-agnostic: sessions write through whatever `Transport`
    object is passed to `connect()`. All methods are thread-safe.

    Args:
        send_timeout: Upper bound in seconds for writing one frame to one
            session. A slow client is treated as failed once this elapses.
        verbose: Toggle for print messages.
    """

    def __init__(self, send_timeout: float = 5.0, verbose: bool = True) -> None:
        assert send_timeout > 0.0, "send_timeout must be positive"
        self._send_timeout = send_timeout
        self._verbose = verbose

        # Guards everything below. Dicts keep insertion order, which is the
        # order broadcasts are delivered in.
        self._cond = threading.Condition(threading.Lock())
        self._sessions: Dict[SessionId, Session] = {}
        self._consumer_ref: Optional[Callable[[], Optional[ConsumerCallback]]] = None
        self._session_counter = 0
        self._inflight_broadcasts = 0
        self._closed = False

        self._error_cb: List[ErrorCallback] = []

    def __len__(self) -> int:
        with self._cond:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._cond:
            return session_id in self._sessions

    @property
    def closed(self) -> bool:
        return self._closed

    def get_session_ids(self) -> Tuple[SessionId, ...]:
        """Returns the ids of all open sessions, in connection order."""
        with self._cond:
            return tuple(self._sessions.keys())

    def connect(self, transport: Transport) -> SessionId:
        """Register a new session for a freshly opened connection."""
        with self._cond:
            if self._closed:
                closed = True
            else:
                closed = False
                session_id = SessionId(self._session_counter)
                self._session_counter += 1
                self._sessions[session_id] = Session(session_id, transport)
                total = len(self._sessions)

        if closed:
            transport.close()
            raise HubClosedError("Cannot connect to a hub that has been shut down")

        if self._verbose:
            rich.print(
                f"[bold](wsrelay)[/bold] Connection opened ({session_id},"
                f" {total} total)"
            )
        return session_id

    def disconnect(self, session_id: SessionId) -> None:
        """Remove a session, if present, and close it. Idempotent."""
        with self._cond:
            session = self._sessions.pop(session_id, None)
            total = len(self._sessions)

        if session is None:
            return
        session.close()
        if self._verbose:
            rich.print(
                f"[bold](wsrelay)[/bold] Connection closed ({session_id},"
                f" {total} total)"
            )

    def register_consumer(self, callback: Optional[TConsumer]) -> Optional[TConsumer]:
        """Set the consumer for inbound messages, replacing any previous one.

        The hub only keeps a weak reference: the caller owns the consumer's
        lifetime. Bound methods are tracked with `weakref.WeakMethod`. Lambdas
        and `functools.partial` objects trigger a warning, since they are
        usually collected right away unless stored elsewhere. Passing
        `None` clears the consumer.

        Returns the callback, so this can be used as a decorator.
        """
        ref: Optional[Callable[[], Optional[ConsumerCallback]]]
        if callback is None:
            ref = None
        else:
            if isinstance(callback, functools.partial):
                kind = "functools.partial"
            elif getattr(callback, "__name__", None) == "<lambda>":
                kind = "lambda"
            else:
                kind = None
            if kind is not None:
                warnings.warn(
                    f"Registering a {kind} as consumer: the hub only holds a weak"
                    f" reference, so keep the {kind} alive elsewhere.",
                    stacklevel=2,
                )
            if inspect.ismethod(callback):
                ref = weakref.WeakMethod(callback)
            else:
                ref = weakref.ref(callback)

        with self._cond:
            self._consumer_ref = ref
        return callback

    def get_consumer(self) -> Optional[ConsumerCallback]:
        """Returns the registered consumer, or `None` if there is none or it has
        been garbage collected."""
        with self._cond:
            ref = self._consumer_ref
        return None if ref is None else ref()

    def on_error(self, callback: TErrorCallback) -> TErrorCallback:
        """Attach a callback that observes non-fatal error events
        (`SendFailed`, `ConsumerUnavailable`)."""
        with self._cond:
            self._error_cb.append(callback)
        return callback

    def on_inbound_message(self, session_id: SessionId, payload: str) -> None:
        """Hand an inbound frame to the consumer. Without a consumer the message
        is dropped; this is reported, not raised."""
        consumer = self.get_consumer()
        if consumer is None:
            if self._verbose:
                rich.print(
                    f"[bold](wsrelay)[/bold] No consumer registered, dropped"
                    f" message from {session_id}"
                )
            self._report(ConsumerUnavailable(session_id, payload))
            return
        consumer(session_id, Message.inbound(session_id, payload))

    def broadcast(self, payload: Union[str, Message]) -> int:
        """Send a frame to every session that is open right now, in connection
        order. Never raises for per-session failures: failed sessions are
        reported via `on_error()` and removed once the pass completes.

        Returns:
            Number of sessions the frame was delivered to.
        """
        if isinstance(payload, Message):
            assert payload.direction == "outbound", "Can only broadcast outbound messages"
            payload = payload.payload
        if not isinstance(payload, str):
            raise TypeError(f"Broadcast payload must be str, got {type(payload)}")

        with self._cond:
            if self._closed:
                return 0
            targets = list(self._sessions.values())
            self._inflight_broadcasts += 1

        delivered = 0
        failures: List[SendFailed] = []
        try:
            # Sends happen outside the lock; connects and disconnects aren't
            # blocked by slow writes.
            for session in targets:
                try:
                    session.send(payload, timeout=self._send_timeout)
                except SessionClosedError:
                    # Disconnected since the snapshot was taken.
                    continue
                except Exception as e:
                    failures.append(SendFailed(session.session_id, _describe(e)))
                else:
                    delivered += 1
        finally:
            with self._cond:
                for failure in failures:
                    self._sessions.pop(failure.session_id, None)
                self._inflight_broadcasts -= 1
                self._cond.notify_all()

        for failure in failures:
            if self._verbose:
                rich.print(
                    f"[bold](wsrelay)[/bold] Send to {failure.session_id} failed"
                    f" ({failure.reason}), removed session"
                )
            self._report(failure)
        return delivered

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Close the hub. Waits for in-flight broadcasts (at most `timeout`
        seconds, or one send timeout per open session if `None`), then closes all
        sessions and releases the consumer. Idempotent."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            if timeout is None:
                timeout = self._send_timeout * max(len(self._sessions), 1)
            deadline = time.monotonic() + timeout
            while self._inflight_broadcasts > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0.0:
                    break
                self._cond.wait(remaining)

            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._consumer_ref = None

        for session in sessions:
            session.close()
        if self._verbose and len(sessions) > 0:
            rich.print(
                f"[bold](wsrelay)[/bold] Hub shut down, closed {len(sessions)}"
                " sessions"
            )

    def _report(self, error: HubError) -> None:
        with self._cond:
            callbacks = list(self._error_cb)
        for cb in callbacks:
            call_and_print_errors(cb, error)


def _describe(e: BaseException) -> str:
    message = str(e)
    return type(e).__name__ if message == "" else f"{type(e).__name__}: {message}"
