"""Desktop consumer

A long-lived application object receives messages from a browser extension and
periodically pushes status updates back to it.

The hub only holds a weak reference to the consumer, so the application object
must outlive the registration; here it lives for the whole script.
"""

import time

import wsrelay


class StatusPanel:
    def __init__(self, server: wsrelay.RelayServer) -> None:
        self._server = server
        self.last_message = ""

    def handle_message(self, session_id: wsrelay.SessionId, message: wsrelay.Message) -> None:
        print(f"Extension {session_id} says: {message.payload}")
        self.last_message = message.payload

    def push_status(self) -> None:
        count = self._server.broadcast(f"status: last message was {self.last_message!r}")
        print(f"Pushed status to {count} client(s)")


def main() -> None:
    server = wsrelay.RelayServer(port=8080, path="/chat")
    panel = StatusPanel(server)
    server.register_consumer(panel.handle_message)

    @server.on_error
    def _(error: wsrelay.HubError) -> None:
        print(f"Relay error: {error}")

    try:
        while True:
            time.sleep(5.0)
            panel.push_status()
    except KeyboardInterrupt:
        server.stop()


if __name__ == "__main__":
    main()
