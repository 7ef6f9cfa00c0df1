"""Tests for uloop_sdk.push.router.PushNotificationRouter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from fake_unity import push_line, send_push_lines
from uloop_sdk.capabilities import RefreshOutcome
from uloop_sdk.client.recovery import RecoveryOutcome
from uloop_sdk.events import (
    PEER_DISCONNECTED,
    EventEmitter,
    PeerDisconnected,
    PushNotification,
    PushNotificationType,
    ReceivedNotification,
)
from uloop_sdk.push.router import PushNotificationRouter
from uloop_sdk.push.server import PushNotificationReceiver


def _received(notification_type: PushNotificationType, payload=None) -> ReceivedNotification:
    return ReceivedNotification("unity_1_abc", PushNotification(notification_type, payload=payload or {}))


class _Harness:
    def __init__(self, recovery_outcome=None, connected=True):
        self.receiver = PushNotificationReceiver()
        self.connection = MagicMock()
        self.connection.events = EventEmitter()
        self.connection.connected = connected
        self.connection.disconnect = AsyncMock()
        self.refresher = MagicMock()
        self.refresher.refresh = AsyncMock(return_value=RefreshOutcome.success(2))
        self.recovery = MagicMock()
        self.recovery.run = AsyncMock(return_value=recovery_outcome or RecoveryOutcome.success(8700))
        self.router = PushNotificationRouter(
            self.receiver, self.connection, self.refresher, self.recovery
        )
        self.router.attach()

    def emit(self, event, payload):
        self.receiver.events.emit(event, payload)

    async def settle(self):
        await self.router.tasks.join(timeout=1.0)


class TestRouting:

    @pytest.mark.asyncio
    async def test_tools_changed_refreshes(self):
        h = _Harness()
        h.emit("tools_changed", _received(PushNotificationType.TOOLS_CHANGED))
        await h.settle()
        h.refresher.refresh.assert_awaited_once()
        h.recovery.run.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event,notification_type", [
        ("connection_established", PushNotificationType.CONNECTION_ESTABLISHED),
        ("domain_reload_recovered", PushNotificationType.DOMAIN_RELOAD_RECOVERED),
    ])
    async def test_recover_then_refresh(self, event, notification_type):
        h = _Harness()
        h.emit(event, _received(notification_type, {"endpoint": "localhost:1"}))
        await h.settle()
        h.recovery.run.assert_awaited_once()
        h.refresher.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_healthy_connection_still_refreshes(self):
        h = _Harness(RecoveryOutcome.already_healthy())
        h.emit("domain_reload_recovered", _received(PushNotificationType.DOMAIN_RELOAD_RECOVERED))
        await h.settle()
        h.refresher.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [
        RecoveryOutcome.unity_not_found(8700, "connect ECONNREFUSED"),
        RecoveryOutcome.already_in_progress(),
        RecoveryOutcome.error("UNITY_TCP_PORT is not set"),
    ])
    async def test_unusable_recovery_skips_refresh(self, outcome):
        h = _Harness(outcome)
        h.emit("connection_established", _received(PushNotificationType.CONNECTION_ESTABLISHED))
        await h.settle()
        h.refresher.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_domain_reload_start_only_logs(self):
        h = _Harness()
        h.emit("domain_reload_start", _received(PushNotificationType.DOMAIN_RELOAD))
        await h.settle()
        h.recovery.run.assert_not_awaited()
        h.refresher.refresh.assert_not_awaited()
        h.connection.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_announced_disconnect_drops_connection(self):
        h = _Harness()
        h.emit(PEER_DISCONNECTED, PeerDisconnected("unity_1_abc", "Editor quitting", announced=True))
        await h.settle()
        h.connection.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", [
        PeerDisconnected("unity_1_abc"),
        PeerDisconnected("unity_1_abc", "idle timeout"),
        PeerDisconnected("unity_1_abc", "[Errno 104] Connection reset by peer"),
    ])
    async def test_other_peer_closes_keep_connection(self, event):
        h = _Harness()
        h.emit(PEER_DISCONNECTED, event)
        await h.settle()
        h.connection.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_announced_disconnect_when_already_disconnected(self):
        h = _Harness(connected=False)
        h.emit(PEER_DISCONNECTED, PeerDisconnected("unity_1_abc", "bye", announced=True))
        await h.settle()
        h.connection.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bridge_list_changed_notification(self):
        h = _Harness()
        h.connection.events.emit("notification", {"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
        h.connection.events.emit("notification", {"jsonrpc": "2.0", "method": "notifications/other"})
        await h.settle()
        h.refresher.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_action_failure_is_logged(self, caplog):
        h = _Harness()
        h.refresher.refresh.side_effect = RuntimeError("refresh exploded")
        h.emit("tools_changed", _received(PushNotificationType.TOOLS_CHANGED))
        await h.settle()
        await asyncio.sleep(0)
        assert h.router.tasks.failure_count == 1
        assert "refresh exploded" in caplog.text


class TestAttachment:

    @pytest.mark.asyncio
    async def test_attach_is_idempotent(self):
        h = _Harness()
        h.router.attach()
        assert h.receiver.events.listener_count("tools_changed") == 1
        assert h.router.attached

    @pytest.mark.asyncio
    async def test_detach_stops_routing(self):
        h = _Harness()
        h.router.detach()
        assert not h.router.attached
        h.emit("tools_changed", _received(PushNotificationType.TOOLS_CHANGED))
        h.connection.events.emit("notification", {"method": "notifications/tools/list_changed"})
        await h.settle()
        h.refresher.refresh.assert_not_awaited()


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_push_line_reaches_refresher(self):
        h = _Harness()
        async with h.receiver:
            refreshed = asyncio.Event()
            h.refresher.refresh.side_effect = lambda: refreshed.set() or RefreshOutcome.success(1)
            await send_push_lines(h.receiver.port, push_line("TOOLS_CHANGED"))
            await asyncio.wait_for(refreshed.wait(), timeout=2.0)
