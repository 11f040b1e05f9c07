"""Tests for the connectivity monitor."""

from __future__ import annotations

from ecogram_offline.sync import ConnectivityMonitor, TriggerReason


class TestConnectivityMonitor:
    async def test_listeners_see_transitions(self) -> None:
        monitor = ConnectivityMonitor(online=True)
        seen: list[bool] = []
        monitor.add_listener(seen.append)

        await monitor.set_online(False)
        await monitor.set_online(False)
        await monitor.set_online(True)

        assert seen == [False, True]
        assert monitor.is_online is True

    async def test_going_online_requests_sync(self) -> None:
        monitor = ConnectivityMonitor(online=False)
        reasons: list[TriggerReason] = []

        async def handler(reason: TriggerReason) -> None:
            reasons.append(reason)

        monitor.on_sync_requested(handler)
        await monitor.set_online(True)
        await monitor.wait_idle()

        assert reasons == [TriggerReason.ONLINE]

    async def test_going_offline_does_not_request_sync(self) -> None:
        monitor = ConnectivityMonitor(online=True)
        reasons: list[TriggerReason] = []
        monitor.on_sync_requested(reasons.append)

        await monitor.set_online(False)

        assert reasons == []

    async def test_unsubscribe(self) -> None:
        monitor = ConnectivityMonitor()
        reasons: list[TriggerReason] = []
        unsubscribe = monitor.on_sync_requested(reasons.append)

        await monitor.request_sync()
        unsubscribe()
        await monitor.request_sync()

        assert reasons == [TriggerReason.REQUESTED]

    async def test_check_uses_probe(self) -> None:
        async def probe() -> bool:
            return False

        monitor = ConnectivityMonitor(online=True, probe=probe)

        assert await monitor.check() is False
        assert monitor.is_online is False

    async def test_failing_probe_means_offline(self) -> None:
        async def probe() -> bool:
            raise ConnectionRefusedError("refused")

        monitor = ConnectivityMonitor(online=True, probe=probe)

        assert await monitor.check() is False

    async def test_check_without_probe_keeps_state(self) -> None:
        monitor = ConnectivityMonitor(online=False)
        assert await monitor.check() is False
