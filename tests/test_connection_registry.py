import pytest

from homeservices.realtime.connectionRegistry import ConnectionRegistry, booking_room, user_room


class Socket:
    def __init__(self, broken: bool = False):
        self.broken = broken
        self.messages = []
        self.closed_with = None

    async def send_json(self, data, mode="text"):
        if self.broken:
            raise RuntimeError("socket is gone")
        self.messages.append(data)

    async def close(self, code=1000, reason=None):
        self.closed_with = code


async def test_connect_puts_the_socket_in_the_user_room():
    registry = ConnectionRegistry()
    socket = Socket()

    await registry.connect("u1", socket)

    assert registry.is_online("u1")
    assert not registry.is_online("u2")
    assert await registry.broadcast(user_room("u1"), "notification", {"type": "x"}) == 1
    assert socket.messages == [{"event": "notification", "data": {"type": "x"}}]


async def test_booking_room_reaches_every_member():
    registry = ConnectionRegistry()
    client, provider, bystander = Socket(), Socket(), Socket()
    for user_id, socket in (("c", client), ("p", provider), ("b", bystander)):
        await registry.connect(user_id, socket)
    await registry.join(booking_room("42"), client)
    await registry.join(booking_room("42"), provider)

    delivered = await registry.broadcast(booking_room("42"), "booking_status_changed", {"status": "accepted"})

    assert delivered == 2
    assert bystander.messages == []


async def test_failed_send_drops_the_connection():
    registry = ConnectionRegistry()
    broken = Socket(broken=True)
    await registry.connect("u1", broken)
    await registry.join(booking_room("42"), broken)

    assert await registry.broadcast(booking_room("42"), "ping", {}) == 0

    assert not registry.is_online("u1")
    assert registry.room_size(booking_room("42")) == 0


async def test_leave_and_disconnect():
    registry = ConnectionRegistry()
    socket = Socket()
    await registry.connect("u1", socket)
    await registry.join(booking_room("42"), socket)

    await registry.leave(booking_room("42"), socket)
    assert registry.room_size(booking_room("42")) == 0
    assert registry.is_online("u1")

    await registry.disconnect("u1", socket)
    assert not registry.is_online("u1")
    assert registry.room_size(user_room("u1")) == 0


async def test_close_shuts_every_socket_and_refuses_new_ones():
    registry = ConnectionRegistry()
    first, second = Socket(), Socket()
    await registry.connect("u1", first)
    await registry.connect("u2", second)

    await registry.close()

    assert first.closed_with == second.closed_with == 1001
    assert not registry.is_online("u1")
    with pytest.raises(RuntimeError):
        await registry.connect("u3", Socket())
