"""Realtime frame dispatch and topic fan-out."""

import asyncio

import pytest

from tableside.core.rbac import TokenData, UserRole
from tableside.realtime import ConnectionContext, RealtimeDispatcher
from tableside.services.notification_service import (
    ConnectionManager,
    WebSocketFanout,
    safe_publish,
)


@pytest.fixture
def dispatcher(session_factory, publisher):
    return RealtimeDispatcher(session_factory, publisher)


def _diner(location_id=1):
    return ConnectionContext(location_id=location_id)


def _waiter(user_id=7, location_id=1, token_location=None):
    return ConnectionContext(location_id=location_id, user=TokenData(user_id, UserRole.STAFF, token_location))


def _only_reply(result):
    assert len(result.replies) == 1
    return result.replies[0]


class TestFrames:

    def test_ping(self, dispatcher):
        assert _only_reply(dispatcher.dispatch(_diner(), {"type": "ping"})).type == "pong"

    def test_unknown_type(self, dispatcher):
        reply = _only_reply(dispatcher.dispatch(_diner(), {"type": "dance"}))
        assert reply.type == "error"
        assert reply.data["kind"] == "invalid_frame"

    def test_bad_payload(self, dispatcher):
        reply = _only_reply(dispatcher.dispatch(_diner(), {"type": "acknowledge_call", "data": {"call_id": "x"}}))
        assert reply.data["kind"] == "validation_error"

    def test_message_envelope(self, dispatcher):
        message = _only_reply(dispatcher.dispatch(_diner(), {"type": "ping"})).to_message()
        assert set(message) == {"type", "data", "timestamp"}


class TestJoinLeave:

    def test_diner_joins_customer_topic(self, dispatcher):
        result = dispatcher.dispatch(_diner(3), {"type": "join_location", "data": {}})
        assert result.subscribe == ["customer:3"]
        assert _only_reply(result).type == "joined"

    def test_waiter_joins_waiter_and_floor_topics(self, dispatcher):
        result = dispatcher.dispatch(_waiter(7), {"type": "join_location", "data": {"role": "waiter"}})
        assert result.subscribe == ["waiter:1", "location:1", "user:7"]

    def test_manager_sees_everything(self, dispatcher):
        context = ConnectionContext(location_id=2, user=TokenData(1, UserRole.MANAGER))
        result = dispatcher.dispatch(context, {"type": "join_location", "data": {"role": "manager"}})
        assert set(result.subscribe) == {"location:2", "waiter:2", "customer:2", "kitchen:2", "user:1"}

    def test_staff_role_needs_token(self, dispatcher):
        result = dispatcher.dispatch(_diner(), {"type": "join_location", "data": {"role": "kitchen"}})
        assert result.subscribe == []
        assert _only_reply(result).data["kind"] == "unauthorized"

    def test_token_bound_to_other_location(self, dispatcher):
        result = dispatcher.dispatch(
            _waiter(token_location=2), {"type": "join_location", "data": {"role": "waiter", "location_id": 1}}
        )
        assert _only_reply(result).data["kind"] == "forbidden"

    def test_leave(self, dispatcher):
        result = dispatcher.dispatch(_diner(4), {"type": "leave_location", "data": {}})
        assert set(result.unsubscribe) == {"location:4", "waiter:4", "customer:4", "kitchen:4"}


class TestWaiterCallFrames:

    def test_call_lifecycle_over_frames(self, dispatcher, seated, publisher):
        _, session_id, pids = seated
        created = _only_reply(dispatcher.dispatch(_diner(), {
            "type": "create_waiter_call",
            "data": {"session_id": session_id, "participant_id": pids[0], "call_type": "refill", "priority": "high"},
        }))
        assert created.type == "waiter_call_created"
        call_id = created.data["id"]

        acked = _only_reply(dispatcher.dispatch(_waiter(7), {
            "type": "acknowledge_call", "data": {"call_id": call_id, "estimated_arrival_minutes": 2},
        }))
        assert acked.type == "waiter_call_acknowledged"
        assert acked.data["assigned_waiter_id"] == 7

        resolved = _only_reply(dispatcher.dispatch(_waiter(7), {
            "type": "resolve_call", "data": {"call_id": call_id, "resolution": "Topped up"},
        }))
        assert resolved.data["status"] == "resolved"
        assert "waiter_call_resolved" in publisher.types("location:1")

    def test_diner_cannot_acknowledge(self, dispatcher):
        reply = _only_reply(dispatcher.dispatch(_diner(), {"type": "acknowledge_call", "data": {"call_id": 1}}))
        assert reply.data["kind"] == "unauthorized"

    def test_service_errors_become_error_frames(self, dispatcher):
        reply = _only_reply(dispatcher.dispatch(_waiter(), {"type": "acknowledge_call", "data": {"call_id": 404}}))
        assert reply.type == "error"
        assert reply.data["kind"] == "call_not_found"

    def test_token_bound_elsewhere_cannot_touch_calls(self, dispatcher, seated):
        _, session_id, pids = seated
        created = _only_reply(dispatcher.dispatch(_diner(), {
            "type": "create_waiter_call",
            "data": {"session_id": session_id, "participant_id": pids[0], "call_type": "bill"},
        }))

        at_home = _waiter(9, location_id=2, token_location=2)
        reply = _only_reply(dispatcher.dispatch(at_home, {"type": "acknowledge_call", "data": {"call_id": created.data["id"]}}))
        assert reply.data["kind"] == "forbidden"

        visiting = _waiter(9, location_id=1, token_location=2)
        reply = _only_reply(dispatcher.dispatch(visiting, {"type": "update_waiter_status", "data": {"status": "busy"}}))
        assert reply.data["kind"] == "forbidden"

    def test_waiter_status(self, dispatcher):
        reply = _only_reply(dispatcher.dispatch(_waiter(9), {"type": "update_waiter_status", "data": {"status": "break"}}))
        assert reply.type == "waiter_status_updated"
        assert reply.data["status"] == "break"
        assert reply.data["waiter_id"] == 9


class FakeSocket:
    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)


class TestConnectionManager:

    def test_broadcast_reaches_topic_only(self):
        manager = ConnectionManager()
        waiter, diner = FakeSocket(), FakeSocket()
        manager.subscribe(waiter, "waiter:1")
        manager.subscribe(diner, "customer:1")

        delivered = asyncio.run(manager.broadcast("waiter:1", {"type": "x"}))
        assert delivered == 1
        assert waiter.sent == [{"type": "x"}]
        assert diner.sent == []

    def test_broken_sockets_are_dropped(self):
        manager = ConnectionManager()
        broken = FakeSocket(broken=True)
        manager.subscribe(broken, "location:1")
        assert asyncio.run(manager.broadcast("location:1", {})) == 0
        assert manager.get_connection_count("location:1") == 0

    def test_topic_capacity(self):
        manager = ConnectionManager(max_connections_per_topic=1)
        assert manager.subscribe(FakeSocket(), "location:1") is True
        assert manager.subscribe(FakeSocket(), "location:1") is False

    def test_disconnect_removes_every_subscription(self):
        manager = ConnectionManager()
        socket = FakeSocket()
        asyncio.run(manager.accept(socket))
        manager.subscribe(socket, "location:1")
        manager.subscribe(socket, "user:7")
        manager.disconnect(socket)
        assert manager.topics == {}
        assert manager.get_connection_count() == 0

    def test_fanout_publishes_on_its_loop(self):
        manager = ConnectionManager()
        socket = FakeSocket()
        manager.subscribe(socket, "customer:1")

        async def scenario():
            fanout = WebSocketFanout(manager, asyncio.get_running_loop())
            fanout.publish("customer:1", "split_created", {"split_session_id": 1})
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert socket.sent[0]["type"] == "split_created"
        assert socket.sent[0]["topic"] == "customer:1"
        assert socket.sent[0]["data"] == {"split_session_id": 1}

    def test_fanout_without_loop_drops(self):
        WebSocketFanout(ConnectionManager()).publish("customer:1", "x", {})


class TestPublishing:

    def test_safe_publish_swallows_failures(self, publisher):
        class Exploding:
            def publish(self, topic, event_type, payload):
                raise RuntimeError("down")

        safe_publish(Exploding(), ["location:1"], "x", {})
        safe_publish(publisher, ["location:1", "customer:1"], "x", {"a": 1})
        assert publisher.types() == ["x", "x"]
