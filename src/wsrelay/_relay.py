from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple, Union

import rich
from rich import box, style
from rich.panel import Panel
from rich.table import Table

from . import infra
from ._hub import BroadcastHub, TConsumer, TErrorCallback
from ._messages import Message, SessionId
from ._threadpool_exceptions import print_threadpool_errors


class RelayServer:
    """:class:`RelayServer` is the main class for working with wsrelay. On
    instantiation, it launches a thread with a WebSocket server and returns a
    handle for relaying text messages.

    **Inbound.** Every text frame a client sends is passed verbatim to the
    consumer set with :meth:`RelayServer.register_consumer`. Consumers run on a
    worker thread, one message at a time, in arrival order.

    **Outbound.** :meth:`RelayServer.broadcast` sends a frame to every connected
    client. Clients whose connection fails or stalls for longer than
    ``send_timeout`` are dropped; see :meth:`RelayServer.on_error`.

    Args:
        host: Host to bind server to.
        port: Port to bind server to. If taken, the next free port is used.
        path: Request path clients connect to.
        send_timeout: Upper bound in seconds for writing a frame to one client.
        verbose: Toggle for print messages.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        path: str = "/chat",
        send_timeout: float = 5.0,
        verbose: bool = True,
    ):
        self._hub = BroadcastHub(send_timeout=send_timeout, verbose=verbose)

        # One worker keeps inbound messages ordered and lets consumers call
        # `broadcast()`, which blocks, off the event loop thread.
        self._worker_state = threading.local()
        self._thread_executor = ThreadPoolExecutor(
            max_workers=1, initializer=self._mark_worker_thread
        )
        self._stop_lock = threading.Lock()
        self._stopped = False

        server = infra.WebsockServer(
            host=host,
            port=port,
            hub=self._hub,
            on_text=self._handle_text,
            path=path,
            verbose=verbose,
        )
        self._websock_server = server

        # Start the server.
        server.start()
        self._event_loop = server.get_event_loop()

        # Form status print.
        port = server.get_port()  # Port may have changed.
        if verbose:
            # 0.0.0.0 is not a real IP; print localhost instead.
            shown_host = "localhost" if host == "0.0.0.0" else host
            table = Table(
                title=None,
                show_header=False,
                box=box.MINIMAL,
                title_style=style.Style(bold=True),
            )
            table.add_row("Websocket", f"ws://{shown_host}:{port}{path}")
            table.add_row("Send timeout", f"{send_timeout:g}s")
            rich.print(Panel(table, title="[bold]wsrelay[/bold]", expand=False))

    @property
    def hub(self) -> BroadcastHub:
        """The hub tracking this server's sessions."""
        return self._hub

    def get_host(self) -> str:
        """Returns the host address of the relay server."""
        return self._websock_server.get_host()

    def get_port(self) -> int:
        """Returns the port of the relay server. This could be different from the
        originally requested one.

        Returns:
            Port as integer.
        """
        return self._websock_server.get_port()

    def get_url(self) -> str:
        """Returns a `ws://` URL that local clients can connect to."""
        host = self.get_host()
        if host == "0.0.0.0":
            host = "localhost"
        return f"ws://{host}:{self.get_port()}{self._websock_server.get_path()}"

    def get_sessions(self) -> Tuple[SessionId, ...]:
        """Returns the ids of connected sessions, in connection order."""
        return self._hub.get_session_ids()

    def get_event_loop(self) -> asyncio.AbstractEventLoop:
        """Get the asyncio event loop used by the background thread."""
        return self._event_loop

    def register_consumer(self, cb: Optional[TConsumer]) -> Optional[TConsumer]:
        """Set the callback that receives inbound messages, as
        ``cb(session_id, message)``. Replaces any previous consumer.

        Only a weak reference is kept, so the caller is responsible for keeping
        the callback alive. Can be used as a decorator.
        """
        return self._hub.register_consumer(cb)

    def on_error(self, cb: TErrorCallback) -> TErrorCallback:
        """Attach a callback for non-fatal errors: `SendFailed` when a client is
        dropped, `ConsumerUnavailable` when an inbound message is dropped."""
        return self._hub.on_error(cb)

    def broadcast(self, payload: Union[str, Message]) -> int:
        """Send a text frame to every connected client. Safe to call from any
        thread, including from inside a consumer.

        Returns:
            Number of clients the frame was delivered to. When called from the
            event loop thread, the send is deferred and 0 is returned.
        """
        if self._on_event_loop():
            self._thread_executor.submit(self._hub.broadcast, payload).add_done_callback(
                print_threadpool_errors
            )
            return 0
        return self._hub.broadcast(payload)

    def stop(self) -> None:
        """Stop the relay server: close client sessions, release the consumer,
        and shut down the background threads."""
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
        self._hub.shutdown()
        self._websock_server.stop()
        # A consumer calling `stop()` runs on the worker, which can't join itself.
        on_worker = getattr(self._worker_state, "is_worker", False)
        self._thread_executor.shutdown(wait=not on_worker)

    def sleep_forever(self) -> None:
        """Equivalent to:
        ```
        while True:
            time.sleep(3600)
        ```
        """
        while True:
            time.sleep(3600)

    def _mark_worker_thread(self) -> None:
        self._worker_state.is_worker = True

    def _on_event_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._event_loop
        except RuntimeError:
            return False

    def _handle_text(self, session_id: SessionId, payload: str) -> None:
        # Called on the event loop thread.
        try:
            self._thread_executor.submit(
                self._hub.on_inbound_message, session_id, payload
            ).add_done_callback(print_threadpool_errors)
        except RuntimeError:
            # Executor was shut down while the connection was still draining.
            pass
