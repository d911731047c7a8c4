""":mod:`wsrelay.infra` provides the WebSocket runtime behind the relay.

We implement abstractions for:
- Launching a WebSocket server in a background thread with its own event loop.
- Feeding connection events and text frames into a `BroadcastHub`.
- Thread-safe, time-bounded writes to individual connections.

These are what `wsrelay.RelayServer` runs on under-the-hood, and generally won't be
useful unless you're wiring a hub to a server by hand.
"""

from ._infra import WebsockServer as WebsockServer
from ._infra import WebsockTransport as WebsockTransport
