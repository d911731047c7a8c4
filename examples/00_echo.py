"""Echo

In this basic example, every message a client sends is broadcast back to all
connected clients.

Connect with any WebSocket client, for example:

    python -m websockets ws://localhost:8080/chat
"""

import wsrelay

server = wsrelay.RelayServer()


@server.register_consumer
def echo(session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
    server.broadcast(f"[{session_id}] {message.payload}")


server.sleep_forever()
