#!/usr/bin/env python
"""Runs a relay server with a terminal consumer.

Inbound frames are printed as they arrive. Every line typed on stdin is
broadcast to all connected clients. Stops on EOF or Ctrl-C."""
from __future__ import annotations

import dataclasses
import sys
from typing import TextIO

import tyro
from rich import console

import wsrelay

CONSOLE = console.Console()


@dataclasses.dataclass(frozen=True)
class RelayConfig:
    """Configuration for the command-line relay."""

    host: str = "0.0.0.0"
    """Host to bind server to."""
    port: int = 8080
    """Port to bind server to. If taken, the next free port is used."""
    path: str = "/chat"
    """Request path that clients connect to."""
    send_timeout: float = 5.0
    """Seconds before a stalled client is dropped."""
    verbose: bool = True
    """Print connection events."""


class TerminalConsumer:
    """Prints inbound messages to the console."""

    def __init__(self, out: console.Console = CONSOLE) -> None:
        self._out = out

    def __call__(self, session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        self._out.print(f"[bold cyan]<{session_id}>[/bold cyan] {message.payload}")


def print_error(error: wsrelay.HubError) -> None:
    if isinstance(error, wsrelay.SendFailed):
        CONSOLE.print(
            f"[bold red]Dropped client {error.session_id}:[/bold red] {error.reason}"
        )


def run_relay(config: RelayConfig, stdin: TextIO = sys.stdin) -> None:
    """Serve until stdin is exhausted, broadcasting each line."""
    server = wsrelay.RelayServer(
        host=config.host,
        port=config.port,
        path=config.path,
        send_timeout=config.send_timeout,
        verbose=config.verbose,
    )
    consumer = TerminalConsumer()
    server.register_consumer(consumer)
    server.on_error(print_error)

    try:
        for line in stdin:
            line = line.rstrip("\n")
            if line == "":
                continue
            count = server.broadcast(line)
            CONSOLE.print(f"[dim]sent to {count} client(s)[/dim]")
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()


def entrypoint() -> None:
    """Entrypoint for use with pyproject scripts."""
    run_relay(tyro.cli(RelayConfig))


if __name__ == "__main__":
    entrypoint()
