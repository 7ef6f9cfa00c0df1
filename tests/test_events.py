"""Tests for uloop_sdk.events - notification types and the emitter."""

import asyncio
import json

import pytest

from uloop_sdk.events import (
    DEFAULT_DISCONNECT_REASON,
    Endpoint,
    EventEmitter,
    PushNotification,
    PushNotificationType,
)
from uloop_sdk.tasks import BackgroundTasks


class TestEndpoint:

    def test_str(self):
        assert str(Endpoint("127.0.0.1", 8700)) == "127.0.0.1:8700"

    def test_parse(self):
        assert Endpoint.parse("localhost:9000") == Endpoint("localhost", 9000)

    @pytest.mark.parametrize("value", ["localhost", ":9000", "host:port", ""])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            Endpoint.parse(value)

    def test_frozen(self):
        endpoint = Endpoint("127.0.0.1", 1)
        with pytest.raises(AttributeError):
            endpoint.port = 2


class TestPushNotification:

    def test_known_type(self):
        notification = PushNotification.from_dict(
            {"type": "DOMAIN_RELOAD", "timestamp": "t", "payload": {"a": 1}}
        )
        assert notification.type is PushNotificationType.DOMAIN_RELOAD
        assert notification.known
        assert notification.payload == {"a": 1}
        assert notification.timestamp == "t"

    def test_unknown_type_is_kept(self):
        notification = PushNotification.from_dict({"type": "SOMETHING_NEW"})
        assert not notification.known
        assert notification.type_name == "SOMETHING_NEW"

    def test_missing_payload_is_empty(self):
        notification = PushNotification.from_dict({"type": "TOOLS_CHANGED", "payload": "x"})
        assert notification.payload == {}
        assert notification.timestamp

    @pytest.mark.parametrize("data", [[], "TOOLS_CHANGED", {}, {"type": 5}, {"type": ""}])
    def test_invalid(self, data):
        with pytest.raises(ValueError):
            PushNotification.from_dict(data)

    def test_serialize_roundtrip_keeps_fields(self):
        original = PushNotification(PushNotificationType.TOOLS_CHANGED, "t", {"n": 2})
        text = original.to_json()
        assert json.loads(text) == {"type": "TOOLS_CHANGED", "timestamp": "t", "payload": {"n": 2}}
        assert PushNotification.from_dict(json.loads(text)) == original

    def test_disconnect_reason(self):
        with_reason = PushNotification(PushNotificationType.USER_DISCONNECT, payload={"reason": "bye"})
        without = PushNotification(PushNotificationType.UNITY_SHUTDOWN)
        assert with_reason.disconnect_reason() == "bye"
        assert without.disconnect_reason() == DEFAULT_DISCONNECT_REASON

    @pytest.mark.parametrize(
        "reason, expected",
        [
            ({"type": "UNITY_SHUTDOWN", "message": "Editor quitting"}, "Editor quitting"),
            ({"type": "USER_DISCONNECT"}, "USER_DISCONNECT"),
            ({"type": "", "message": ""}, DEFAULT_DISCONNECT_REASON),
            ({}, DEFAULT_DISCONNECT_REASON),
            (42, DEFAULT_DISCONNECT_REASON),
        ],
    )
    def test_disconnect_reason_object(self, reason, expected):
        notification = PushNotification(
            PushNotificationType.UNITY_SHUTDOWN, payload={"reason": reason}
        )
        assert notification.disconnect_reason() == expected


class TestEventEmitter:

    def test_listeners_called_in_order(self):
        emitter = EventEmitter()
        calls = []
        emitter.on("x", lambda p: calls.append(("a", p)))
        emitter.on("x", lambda p: calls.append(("b", p)))
        assert emitter.emit("x", 1) == 2
        assert calls == [("a", 1), ("b", 1)]

    def test_unsubscribe(self):
        emitter = EventEmitter()
        calls = []
        unsubscribe = emitter.on("x", calls.append)
        unsubscribe()
        assert emitter.emit("x", 1) == 0
        assert calls == []
        assert emitter.listener_count("x") == 0

    def test_failing_listener_does_not_stop_others(self, caplog):
        emitter = EventEmitter()
        calls = []

        def boom(payload):
            raise RuntimeError("listener broke")

        emitter.on("x", boom)
        emitter.on("x", calls.append)
        emitter.emit("x", "p")
        assert calls == ["p"]
        assert "listener broke" in caplog.text

    def test_emit_without_listeners(self):
        assert EventEmitter().emit("nothing") == 0

    def test_clear(self):
        emitter = EventEmitter()
        emitter.on("x", lambda p: None)
        emitter.clear()
        assert emitter.listener_count("x") == 0

    @pytest.mark.asyncio
    async def test_async_listener_runs_in_background(self):
        tasks = BackgroundTasks("test")
        emitter = EventEmitter(tasks)
        done = asyncio.Event()

        async def listener(payload):
            done.set()

        emitter.on("x", listener)
        emitter.emit("x")
        await asyncio.wait_for(done.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_once(self):
        emitter = EventEmitter()
        future = emitter.once("ready")
        emitter.emit("ready", 1)
        emitter.emit("ready", 2)
        assert await future == 1
        assert emitter.listener_count("ready") == 0


class TestBackgroundTasks:

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_counted(self, caplog):
        tasks = BackgroundTasks("test")

        async def fail():
            raise RuntimeError("background failure")

        tasks.spawn(fail(), name="fail")
        await tasks.join(timeout=1.0)
        await asyncio.sleep(0)
        assert tasks.failure_count == 1
        assert "test:fail" in caplog.text
        assert "background failure" in caplog.text

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        tasks = BackgroundTasks("test")
        tasks.spawn(asyncio.sleep(10), name="sleep")
        assert len(tasks) == 1
        await tasks.cancel_all()
        await asyncio.sleep(0)
        assert len(tasks) == 0
        assert tasks.failure_count == 0
