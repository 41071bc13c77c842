"""Tests for host adapters: signal hub, persistent stores and the asyncio scheduler."""

import asyncio
import pytest
import tempfile
from pathlib import Path

from beacon_crm.tracking import AsyncioScheduler, JsonFileStore, SignalHub


@pytest.fixture
def store_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "store" / "client.json"


class TestJsonFileStore:
    """Tests for the JSON file store."""

    def test_values_survive_reopen(self, store_path):
        store = JsonFileStore(store_path)
        store.set_persistent_value("visitor", "V1")
        store.set_persistent_value("queue", "[]")
        store.remove_persistent_value("queue")

        reopened = JsonFileStore(store_path)
        assert reopened.get_persistent_value("visitor") == "V1"
        assert reopened.get_persistent_value("queue") is None

    def test_corrupt_file_starts_empty(self, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_text("not json")
        assert JsonFileStore(store_path).get_persistent_value("visitor") is None


class TestSignalHub:
    def test_unsubscribe(self):
        hub = SignalHub()
        seen = []
        unsubscribe = hub.on_signal("click", lambda kind, data: seen.append((kind, data)))
        hub.emit("click", x=1)
        unsubscribe()
        hub.emit("click", x=2)

        assert seen == [("click", {"x": 1})]
        assert hub.handler_count("click") == 0


class TestAsyncioScheduler:
    """Timers and I/O completions come back on the event loop."""

    def test_call_later_and_run_io(self):
        results = []

        async def scenario():
            scheduler = AsyncioScheduler()
            loop = asyncio.get_running_loop()
            scheduler.call_later(0.01, lambda: results.append("timer"))
            cancelled = scheduler.call_later(0.01, lambda: results.append("cancelled"))
            scheduler.cancel(cancelled)
            scheduler.run_io(lambda: 42, lambda value, error: results.append((value, error, loop.is_running())))
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert "timer" in results
        assert "cancelled" not in results
        assert (42, None, True) in results

    def test_run_io_reports_errors(self):
        errors = []

        def fail():
            raise ConnectionError("down")

        async def scenario():
            scheduler = AsyncioScheduler()
            scheduler.run_io(fail, lambda value, error: errors.append(error))
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert len(errors) == 1
        assert isinstance(errors[0], ConnectionError)
