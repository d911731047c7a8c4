from __future__ import annotations

import asyncio
import concurrent.futures
import http
import threading
from asyncio.events import AbstractEventLoop
from typing import Callable, Optional, Set

import rich
import websockets.exceptions
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

from .._hub import BroadcastHub
from .._messages import HubClosedError, SessionClosedError, SessionId
from .._threadpool_exceptions import print_threadpool_errors


class WebsockTransport:
    """Writes frames to one websocket connection from any thread other than the
    server's event loop thread."""

    def __init__(
        self, connection: ServerConnection, event_loop: AbstractEventLoop
    ) -> None:
        self._connection = connection
        self._event_loop = event_loop
        # The event loop only keeps weak references to tasks.
        self._close_tasks: Set[asyncio.Task[None]] = set()

    def _in_event_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._event_loop
        except RuntimeError:
            return False

    def send(self, payload: str, timeout: float) -> None:
        if self._in_event_loop():
            raise RuntimeError(
                "Blocking send from the server's event loop thread would deadlock"
            )
        future = asyncio.run_coroutine_threadsafe(
            self._connection.send(payload), self._event_loop
        )
        try:
            future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise TimeoutError(f"Send did not complete within {timeout} seconds")
        except websockets.exceptions.ConnectionClosedOK as e:
            # The client hung up normally; not a write failure.
            raise SessionClosedError(str(e)) from e

    def close(self) -> None:
        if self._event_loop.is_closed():
            return
        if self._in_event_loop():
            task = self._event_loop.create_task(self._connection.close())
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)
            task.add_done_callback(print_threadpool_errors)
        else:
            asyncio.run_coroutine_threadsafe(
                self._connection.close(), self._event_loop
            ).add_done_callback(print_threadpool_errors)


class WebsockServer:
    """Websocket server that feeds a `BroadcastHub`. Runs its own event loop in a
    background thread, so the rest of the program can stay synchronous.

    Args:
        host: Host to bind server to.
        port: Port to bind server to. If it's taken, the next free port is
            used. Pass 0 to let the OS pick one.
        hub: Hub that tracks the sessions of this server.
        on_text: Called on the event loop thread with `(session_id, payload)` for
            every text frame. Should return quickly.
        path: Request path that clients connect to. Other paths get a 404.
        verbose: Toggle for print messages.
    """

    def __init__(
        self,
        host: str,
        port: int,
        hub: BroadcastHub,
        on_text: Callable[[SessionId, str], None],
        path: str = "/chat",
        verbose: bool = True,
    ) -> None:
        assert path.startswith("/"), "path should start with a '/'"
        self._host = host
        self._port = port
        self._hub = hub
        self._on_text = on_text
        self._path = path
        self._verbose = verbose

        self._event_loop: Optional[AbstractEventLoop] = None
        self._server: Optional[Server] = None
        self._thread: Optional[threading.Thread] = None
        self._start_error: Optional[BaseException] = None

    def start(self) -> None:
        """Start the server. Blocks until it is accepting connections."""
        assert self._thread is None, "Server was already started"

        # Start server thread.
        ready_sem = threading.Semaphore(value=1)
        ready_sem.acquire()
        self._thread = threading.Thread(
            target=lambda: self._background_worker(ready_sem),
            daemon=True,
        )
        self._thread.start()

        # Wait for the thread to set self._event_loop and self._server...
        ready_sem.acquire()
        if self._start_error is not None:
            raise self._start_error
        assert self._server is not None

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the server and its thread. Open connections are closed."""
        if self._event_loop is None or self._event_loop.is_closed():
            return
        assert self._thread is not None

        future = asyncio.run_coroutine_threadsafe(self._close(), self._event_loop)
        try:
            future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
        self._event_loop.call_soon_threadsafe(self._event_loop.stop)
        self._thread.join(timeout)

    def get_host(self) -> str:
        return self._host

    def get_port(self) -> int:
        """Returns the bound port, which may differ from the requested one."""
        return self._port

    def get_path(self) -> str:
        return self._path

    def get_event_loop(self) -> AbstractEventLoop:
        assert self._event_loop is not None, "Server has not been started"
        return self._event_loop

    async def _close(self) -> None:
        assert self._server is not None
        self._server.close()
        await self._server.wait_closed()

    def _process_request(
        self, connection: ServerConnection, request: Request
    ) -> Optional[Response]:
        # Strip out search params. Any origin is accepted.
        if request.path.partition("?")[0] != self._path:
            return connection.respond(http.HTTPStatus.NOT_FOUND, "404\n")
        return None

    async def _serve(self, connection: ServerConnection) -> None:
        """Server loop, run once per connection."""
        assert self._event_loop is not None
        try:
            session_id = self._hub.connect(
                WebsockTransport(connection, self._event_loop)
            )
        except HubClosedError:
            return

        try:
            async for raw in connection:
                if not isinstance(raw, str):
                    if self._verbose:
                        rich.print(
                            f"[bold](wsrelay)[/bold] Ignoring binary frame from"
                            f" {session_id}"
                        )
                    continue
                self._on_text(session_id, raw)
        except websockets.exceptions.ConnectionClosedError:
            pass
        finally:
            self._hub.disconnect(session_id)

    def _background_worker(self, ready_sem: threading.Semaphore) -> None:
        # Need to make a new event loop; we might not be on the main thread.
        event_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(event_loop)
        self._event_loop = event_loop

        async def start_server(port: int) -> Server:
            return await serve(
                self._serve,
                self._host,
                port,
                process_request=self._process_request,
                compression=None,
            )

        port = self._port
        for _ in range(500):
            try:
                self._server = event_loop.run_until_complete(start_server(port))
                break
            except OSError as e:  # Port not available.
                self._start_error = e
                if port == 0:
                    break
                port += 1
                continue

        if self._server is None:
            event_loop.close()
            ready_sem.release()
            return

        self._start_error = None
        self._port = next(iter(self._server.sockets)).getsockname()[1]
        ready_sem.release()
        event_loop.run_forever()
        event_loop.close()
        if self._verbose:
            rich.print("[bold](wsrelay)[/bold] Server stopped")
