"""End-to-end tests against a real server, using the synchronous websockets client."""

import asyncio
import socket
import threading
import time
from typing import Callable, List

import pytest
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidStatus
from websockets.frames import Close
from websockets.sync.client import connect

import wsrelay
from wsrelay.infra import WebsockTransport


def wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def server():
    server = wsrelay.RelayServer(host="127.0.0.1", port=0, send_timeout=1.0, verbose=False)
    yield server
    server.stop()


def test_inbound_frame_reaches_consumer(server: wsrelay.RelayServer) -> None:
    received: List[wsrelay.Message] = []
    got_message = threading.Event()

    def consumer(session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        received.append(message)
        got_message.set()

    server.register_consumer(consumer)

    with connect(server.get_url()) as client_a:
        assert wait_for(lambda: len(server.get_sessions()) == 1)
        session_a = server.get_sessions()[0]
        with connect(server.get_url()):
            assert wait_for(lambda: len(server.get_sessions()) == 2)
            client_a.send("hi")
            assert got_message.wait(2.0)

    time.sleep(0.05)
    assert [m.payload for m in received] == ["hi"]
    assert received[0].session_id == session_a


def test_inbound_frames_keep_their_order(server: wsrelay.RelayServer) -> None:
    received: List[str] = []

    def consumer(session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        received.append(message.payload)

    server.register_consumer(consumer)

    with connect(server.get_url()) as client:
        for i in range(20):
            client.send(str(i))
        assert wait_for(lambda: len(received) == 20)

    assert received == [str(i) for i in range(20)]


def test_broadcast_reaches_all_clients(server: wsrelay.RelayServer) -> None:
    with connect(server.get_url()) as client_a, connect(server.get_url()) as client_b:
        assert wait_for(lambda: len(server.get_sessions()) == 2)

        assert server.broadcast("x") == 2

        assert client_a.recv(timeout=2.0) == "x"
        assert client_b.recv(timeout=2.0) == "x"
        with pytest.raises(TimeoutError):
            client_a.recv(timeout=0.1)


def test_consumer_can_broadcast(server: wsrelay.RelayServer) -> None:
    def echo(session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        server.broadcast(f"echo: {message.payload}")

    server.register_consumer(echo)

    with connect(server.get_url()) as client_a, connect(server.get_url()) as client_b:
        assert wait_for(lambda: len(server.get_sessions()) == 2)
        client_a.send("ping")
        assert client_a.recv(timeout=2.0) == "echo: ping"
        assert client_b.recv(timeout=2.0) == "echo: ping"


def test_disconnect_removes_session(server: wsrelay.RelayServer) -> None:
    with connect(server.get_url()):
        assert wait_for(lambda: len(server.get_sessions()) == 1)
    assert wait_for(lambda: len(server.get_sessions()) == 0)
    assert server.broadcast("nobody") == 0


def test_no_consumer_drops_message(server: wsrelay.RelayServer) -> None:
    errors: List[wsrelay.HubError] = []
    server.on_error(errors.append)

    with connect(server.get_url()) as client:
        client.send("lost")
        assert wait_for(lambda: len(errors) == 1)

    assert isinstance(errors[0], wsrelay.ConsumerUnavailable)
    assert errors[0].payload == "lost"


def test_other_paths_are_rejected(server: wsrelay.RelayServer) -> None:
    with pytest.raises(InvalidStatus) as excinfo:
        connect(f"ws://127.0.0.1:{server.get_port()}/elsewhere")
    assert excinfo.value.response.status_code == 404


def test_query_string_is_ignored(server: wsrelay.RelayServer) -> None:
    with connect(server.get_url() + "?client=extension"):
        assert wait_for(lambda: len(server.get_sessions()) == 1)


def test_any_origin_is_accepted(server: wsrelay.RelayServer) -> None:
    with connect(server.get_url(), origin="chrome-extension://abcdef"):  # type: ignore
        assert wait_for(lambda: len(server.get_sessions()) == 1)


def test_stop_closes_clients() -> None:
    server = wsrelay.RelayServer(host="127.0.0.1", port=0, verbose=False)
    with connect(server.get_url()) as client:
        assert wait_for(lambda: len(server.get_sessions()) == 1)
        server.stop()
        with pytest.raises(ConnectionClosed):
            client.recv(timeout=2.0)
    assert server.hub.closed


def test_server_port_is_freed() -> None:
    server = wsrelay.RelayServer(host="127.0.0.1", port=0, verbose=False)
    original_port = server.get_port()

    # Assert that the port is not free.
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    result = sock.connect_ex(("127.0.0.1", original_port))
    assert result == 0
    sock.close()
    server.stop()

    time.sleep(0.05)

    # Assert that the port is now free.
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    result = sock.connect_ex(("127.0.0.1", original_port))
    assert result != 0


def test_taken_port_moves_to_next() -> None:
    first = wsrelay.RelayServer(host="127.0.0.1", port=0, verbose=False)
    try:
        second = wsrelay.RelayServer(
            host="127.0.0.1", port=first.get_port(), verbose=False
        )
        try:
            assert second.get_port() > first.get_port()
        finally:
            second.stop()
    finally:
        first.stop()


class StuckConnection:
    """Stands in for a client whose socket never drains."""

    def __init__(self) -> None:
        self.cancelled = threading.Event()

    async def send(self, payload: str) -> None:
        try:
            await asyncio.sleep(60.0)
        except asyncio.CancelledError:
            self.cancelled.set()
            raise

    async def close(self) -> None:
        pass


def test_transport_send_times_out(server: wsrelay.RelayServer) -> None:
    connection = StuckConnection()
    transport = WebsockTransport(connection, server.get_event_loop())  # type: ignore

    start = time.monotonic()
    with pytest.raises(TimeoutError):
        transport.send("x", timeout=0.1)
    assert time.monotonic() - start < 1.0
    assert connection.cancelled.wait(1.0)


def test_stuck_client_is_dropped_from_broadcast(server: wsrelay.RelayServer) -> None:
    errors: List[wsrelay.HubError] = []
    server.on_error(errors.append)

    with connect(server.get_url()) as client:
        assert wait_for(lambda: len(server.get_sessions()) == 1)
        stuck_id = server.hub.connect(
            WebsockTransport(StuckConnection(), server.get_event_loop())  # type: ignore
        )

        assert server.broadcast("x") == 1
        assert client.recv(timeout=2.0) == "x"

    assert stuck_id not in server.hub
    assert len(errors) == 1
    assert isinstance(errors[0], wsrelay.SendFailed)
    assert errors[0].session_id == stuck_id


def test_transport_refuses_blocking_send_on_event_loop(
    server: wsrelay.RelayServer,
) -> None:
    transport = WebsockTransport(StuckConnection(), server.get_event_loop())  # type: ignore

    async def attempt() -> None:
        with pytest.raises(RuntimeError):
            transport.send("x", timeout=0.1)

    asyncio.run_coroutine_threadsafe(attempt(), server.get_event_loop()).result(2.0)


def test_consumer_can_stop_server(server: wsrelay.RelayServer) -> None:
    stop_errors: List[BaseException] = []
    stopped = threading.Event()

    def consumer(session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        if message.payload != "quit":
            return
        try:
            server.stop()
        except BaseException as e:
            stop_errors.append(e)
        finally:
            stopped.set()

    server.register_consumer(consumer)

    with connect(server.get_url()) as client:
        assert wait_for(lambda: len(server.get_sessions()) == 1)
        client.send("quit")
        assert stopped.wait(5.0)
        with pytest.raises(ConnectionClosed):
            client.recv(timeout=2.0)

    assert stop_errors == []
    assert server.hub.closed


def test_binary_frames_are_ignored(server: wsrelay.RelayServer) -> None:
    received: List[str] = []

    def consumer(session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        received.append(message.payload)

    server.register_consumer(consumer)

    with connect(server.get_url()) as client:
        client.send(b"\x00\x01binary")
        client.send("text")
        assert wait_for(lambda: len(received) == 1)
        time.sleep(0.05)
        assert received == ["text"]
        assert len(server.get_sessions()) == 1


def test_consumer_exception_keeps_connection(server: wsrelay.RelayServer, capsys) -> None:
    received: List[str] = []

    def consumer(session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        received.append(message.payload)
        if message.payload == "bad":
            raise ValueError("consumer bug")

    server.register_consumer(consumer)

    with connect(server.get_url()) as client:
        client.send("bad")
        client.send("good")
        assert wait_for(lambda: len(received) == 2)
        assert received == ["bad", "good"]

        assert server.broadcast("still here") == 1
        assert client.recv(timeout=2.0) == "still here"

    assert "consumer bug" in capsys.readouterr().err


def test_broadcast_from_event_loop_is_deferred(server: wsrelay.RelayServer) -> None:
    async def broadcast_on_loop() -> int:
        return server.broadcast("from loop")

    with connect(server.get_url()) as client:
        assert wait_for(lambda: len(server.get_sessions()) == 1)
        result = asyncio.run_coroutine_threadsafe(
            broadcast_on_loop(), server.get_event_loop()
        ).result(2.0)
        assert result == 0
        assert client.recv(timeout=2.0) == "from loop"


class FailingCloseConnection:
    async def send(self, payload: str) -> None:
        pass

    async def close(self) -> None:
        raise ValueError("close failed")


def test_close_task_errors_are_printed(server: wsrelay.RelayServer, capsys) -> None:
    transport = WebsockTransport(
        FailingCloseConnection(), server.get_event_loop()  # type: ignore
    )

    async def close_on_loop() -> int:
        transport.close()
        return len(transport._close_tasks)

    pending = asyncio.run_coroutine_threadsafe(
        close_on_loop(), server.get_event_loop()
    ).result(2.0)
    assert pending == 1

    stderr: List[str] = []

    def printed() -> bool:
        stderr.append(capsys.readouterr().err)
        return "close failed" in "".join(stderr)

    assert wait_for(printed)
    assert len(transport._close_tasks) == 0


class ClosedNormallyConnection:
    async def send(self, payload: str) -> None:
        raise ConnectionClosedOK(Close(1000, "bye"), Close(1000, "bye"), True)

    async def close(self) -> None:
        pass


def test_normal_close_during_send_is_not_a_failure(server: wsrelay.RelayServer) -> None:
    errors: List[wsrelay.HubError] = []
    server.on_error(errors.append)

    transport = WebsockTransport(
        ClosedNormallyConnection(), server.get_event_loop()  # type: ignore
    )
    with pytest.raises(wsrelay.SessionClosedError):
        transport.send("x", timeout=1.0)

    with connect(server.get_url()) as client:
        assert wait_for(lambda: len(server.get_sessions()) == 1)
        server.hub.connect(
            WebsockTransport(ClosedNormallyConnection(), server.get_event_loop())  # type: ignore
        )
        assert server.broadcast("x") == 1
        assert client.recv(timeout=2.0) == "x"

    assert errors == []
