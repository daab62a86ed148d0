from bubbly.broadcaster import ConnectionManager


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket and records every frame sent to it."""

    def __init__(self):
        self.accepted = False
        self.closed = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        if self.closed:
            raise RuntimeError("websocket is closed")
        self.sent.append(payload)

    def events(self, name=None):
        return [frame for frame in self.sent if name is None or frame["event"] == name]


async def open_connection(manager: ConnectionManager, user=None):
    connection = await manager.connect(FakeWebSocket())
    if user is not None:
        manager.register(connection, user.id, user.username)
    return connection
