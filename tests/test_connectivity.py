"""
Tests for the connectivity watcher and probe
"""
import asyncio

import httpx

from custody_sync.core.errors import QueueStorageError
from custody_sync.services.connectivity import ConnectivityState, ConnectivityWatcher, probe_connectivity
from custody_sync.services.status_monitor import StatusMonitor


class TestTransitions:
    """Edge-triggered sync"""

    def test_reconnect_runs_exactly_one_sync(
        self, watcher, queue, remote, notifier, create_bag, create_custody_log, create_photo
    ):
        # Arrange: five pending items queued while offline
        bag_id = create_bag()
        create_custody_log(bag_id)
        create_custody_log(bag_id)
        create_photo(bag_id)
        create_photo("srv-existing")
        monitor = StatusMonitor(queue)
        asyncio.run(watcher.start(initially_online=False))
        assert asyncio.run(monitor.refresh()).pending_count == 5

        # Act
        result = asyncio.run(watcher.set_online(True))

        # Assert
        assert result.success == 5
        assert len(remote.calls_to("create_evidence_bag")) == 1
        assert asyncio.run(monitor.refresh()).pending_count == 0
        assert notifier.messages == [
            ("info", "Connection restored. Syncing offline data..."),
            ("success", "Successfully synced 5 item(s)"),
        ]

    def test_repeated_online_signal_does_not_sync_again(self, watcher, remote, create_custody_log):
        create_custody_log("srv-existing")
        asyncio.run(watcher.start(initially_online=False))

        asyncio.run(watcher.set_online(True))
        create_custody_log("srv-existing")
        second = asyncio.run(watcher.set_online(True))

        assert second is None
        assert len(remote.calls_to("add_custody_entry")) == 1

    def test_going_offline_only_notifies_listeners(self, watcher, remote, notifier):
        asyncio.run(watcher.start(initially_online=True))
        seen = []
        watcher.on_transition(lambda previous, current: seen.append((previous, current)))

        result = asyncio.run(watcher.set_online(False))

        assert result is None
        assert seen == [(ConnectivityState.ONLINE, ConnectivityState.OFFLINE)]
        assert watcher.is_online is False
        assert notifier.messages == []

    def test_failures_are_reported(self, watcher, remote, notifier, create_custody_log):
        log_id = create_custody_log("srv-existing")
        remote.fail_keys.add(log_id)
        asyncio.run(watcher.start(initially_online=False))

        asyncio.run(watcher.set_online(True))

        assert ("error", "Failed to sync 1 item(s)") in notifier.messages

    def test_async_listener_and_unsubscribe(self, watcher):
        seen = []

        async def listener(previous, current):
            seen.append(current)

        unsubscribe = watcher.on_transition(listener)
        asyncio.run(watcher.start(initially_online=False))
        asyncio.run(watcher.set_online(True))
        unsubscribe()
        asyncio.run(watcher.set_online(False))

        assert seen == [ConnectivityState.ONLINE]

    def test_failing_listener_does_not_cancel_reconnect_sync(self, watcher, remote, create_custody_log):
        create_custody_log("srv-existing")

        def broken_listener(previous, current):
            raise RuntimeError("listener crashed")

        watcher.on_transition(broken_listener)
        asyncio.run(watcher.start(initially_online=False))

        result = asyncio.run(watcher.set_online(True))
        asyncio.run(watcher.set_online(True))

        assert result.success == 1
        assert watcher.is_online is True
        assert len(remote.calls_to("add_custody_entry")) == 1

    def test_engine_error_is_contained(self, watcher, queue, notifier, monkeypatch):
        async def broken(kind):
            raise QueueStorageError("disk unavailable")

        monkeypatch.setattr(queue, "list_unsynced", broken)
        asyncio.run(watcher.start(initially_online=False))

        result = asyncio.run(watcher.set_online(True))

        assert result is None
        assert notifier.messages[-1][0] == "error"
        assert notifier.messages[-1][1].startswith("Sync failed")


class TestStartup:
    """Opportunistic sync on start"""

    def test_start_online_syncs_leftovers(self, watcher, remote, create_custody_log):
        create_custody_log("srv-existing")

        result = asyncio.run(watcher.start(initially_online=True))

        assert result.success == 1
        assert watcher.last_result == result

    def test_start_offline_does_nothing(self, watcher, remote, create_custody_log):
        create_custody_log("srv-existing")

        result = asyncio.run(watcher.start(initially_online=False))

        assert result is None
        assert remote.calls == []
        assert watcher.state is ConnectivityState.OFFLINE

    def test_background_start_returns_before_sync_finishes(self, watcher, remote, create_custody_log):
        create_custody_log("srv-existing")

        async def scenario():
            remote.gate = asyncio.Event()
            task = watcher.start_in_background(initially_online=True)
            # State is set at once; the cycle has not run yet
            assert watcher.is_online is True
            assert remote.calls == []

            remote.gate.set()
            return await task

        result = asyncio.run(scenario())

        assert result.success == 1
        assert watcher.last_result == result

    def test_stop_cancels_pending_startup_sync(self, watcher, remote, create_custody_log):
        create_custody_log("srv-existing")

        async def scenario():
            remote.gate = asyncio.Event()
            remote.started = asyncio.Event()
            task = watcher.start_in_background(initially_online=True)
            await remote.started.wait()
            await watcher.stop()
            return task

        task = asyncio.run(scenario())

        assert task.cancelled()
        assert watcher.engine.is_syncing is False

    def test_background_start_offline_schedules_nothing(self, watcher):
        async def scenario():
            return watcher.start_in_background(initially_online=False)

        assert asyncio.run(scenario()) is None
        assert watcher.state is ConnectivityState.OFFLINE


class TestProbe:
    """Connectivity probe"""

    def test_any_response_means_online(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401))

        assert asyncio.run(probe_connectivity("http://remote.test", transport=transport)) is True

    def test_transport_error_means_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        transport = httpx.MockTransport(handler)

        assert asyncio.run(probe_connectivity("http://remote.test", transport=transport)) is False


class TestStatusMonitor:
    """Status surface refresh"""

    def test_refresh_keeps_last_value_when_store_fails(self, queue, create_bag, monkeypatch):
        create_bag()
        monitor = StatusMonitor(queue, interval=60)
        first = asyncio.run(monitor.refresh())

        async def broken():
            raise QueueStorageError("disk unavailable")

        monkeypatch.setattr(queue, "get_status", broken)

        assert asyncio.run(monitor.refresh()) == first

    def test_background_loop_refreshes(self, queue, create_bag):
        create_bag()
        monitor = StatusMonitor(queue, interval=0.01)

        async def scenario():
            monitor.start()
            await asyncio.sleep(0.05)
            await monitor.stop()

        asyncio.run(scenario())

        assert monitor.latest.pending_count == 1
