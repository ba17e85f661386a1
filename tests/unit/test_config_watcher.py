"""
Unit tests for the debounced config watcher.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from watchdog.events import FileClosedEvent, FileModifiedEvent, FileMovedEvent

from certkeeper.core.config_watcher import ConfigWatcher, _QueueingHandler
from certkeeper.core.proxy_controller import ProxyController
from certkeeper.core.renewal_lock import RenewalLock
from certkeeper.models.watch import ProxyActionResult, WatchEvent, WatchEventKind


@pytest.fixture
def lock(settings):
    return RenewalLock(settings.certbot_lock_file)


@pytest.fixture
def proxy(settings, mock_backend):
    return ProxyController(settings, backend=mock_backend)


@pytest.fixture
def watcher(settings, proxy, lock):
    return ConfigWatcher(proxy, lock, settings.watch_paths, debounce=settings.watcher_debounce_time)


def _event(path="templates/default.conf.template"):
    return WatchEvent(path=path, kind=WatchEventKind.MODIFIED)


class TestHandleChanges:
    """Tests for the lock-aware reaction to a settled batch."""

    @pytest.mark.asyncio
    async def test_reload_when_unlocked(self, watcher, mock_backend):
        """A change with no renewal in progress reloads nginx."""
        assert await watcher.handle_changes([_event()]) is True

        assert watcher.reload_count == 1
        mock_backend.validate_config.assert_awaited_once()
        mock_backend.reload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skip_while_lock_held(self, watcher, lock, mock_backend):
        """Scenario: renewal lock present -> no reload, skip is counted."""
        with lock.hold():
            assert await watcher.handle_changes([_event()]) is False

        assert watcher.skipped_count == 1
        assert watcher.reload_count == 0
        mock_backend.validate_config.assert_not_called()
        mock_backend.reload.assert_not_called()

    @pytest.mark.asyncio
    async def test_lock_taken_during_validation_blocks_reload(self, watcher, lock, mock_backend):
        """A provisioning run that starts while nginx -t runs still suppresses the reload."""

        async def _validate():
            lock.acquire()
            return True, "nginx: configuration file test is successful"

        mock_backend.validate_config = AsyncMock(side_effect=_validate)
        try:
            assert await watcher.handle_changes([_event()]) is False
        finally:
            lock.release()

        mock_backend.validate_config.assert_awaited_once()
        mock_backend.reload.assert_not_called()
        assert watcher.skipped_count == 1
        assert watcher.reload_count == 0

    @pytest.mark.asyncio
    async def test_invalid_config_is_not_reloaded(self, watcher, mock_backend):
        """Scenario: nginx -t fails -> warning, no reload, watcher keeps going."""
        mock_backend.validate_config = AsyncMock(return_value=(False, "nginx: [emerg] unknown directive"))

        assert await watcher.handle_changes([_event()]) is False

        assert watcher.reload_count == 0
        mock_backend.reload.assert_not_called()


class TestDebounce:
    """Tests for coalescing bursts of events."""

    @pytest.mark.asyncio
    async def test_quiet_window_returns_nothing(self, watcher):
        """No events within the window means no work."""
        assert await watcher.wait_for_changes() == []

    @pytest.mark.asyncio
    async def test_burst_is_coalesced(self, watcher):
        """Queued events settle into one batch."""
        for i in range(5):
            watcher.queue.put_nowait(_event(f"templates/{i}.conf.template"))

        batch = await watcher.wait_for_changes()

        assert len(batch) == 5
        assert watcher.queue.empty()

    @pytest.mark.asyncio
    async def test_burst_triggers_single_reload(self, watcher, mock_backend):
        """One run_once cycle reloads once regardless of event count."""
        for _ in range(3):
            watcher.queue.put_nowait(_event())

        assert await watcher.run_once() is True

        mock_backend.reload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_once_survives_errors(self, watcher):
        """Unexpected failures are logged, not raised."""
        watcher.proxy = MagicMock(apply_config=AsyncMock(side_effect=RuntimeError("docker went away")))
        watcher.queue.put_nowait(_event())

        assert await watcher.run_once() is False

    @pytest.mark.asyncio
    async def test_failed_reload_result_is_reported(self, watcher):
        """A failed apply result is not counted as a reload."""
        watcher.proxy = MagicMock(
            apply_config=AsyncMock(return_value=ProxyActionResult(success=False, stage="render", message="bad"))
        )
        watcher.queue.put_nowait(_event())

        assert await watcher.run_once() is False
        assert watcher.reload_count == 0


class TestQueueingHandler:
    """Tests for watchdog event filtering."""

    def _handler(self, stack_dir):
        loop = MagicMock()
        handler = _QueueingHandler(
            loop,
            MagicMock(),
            directories=[stack_dir / "templates", stack_dir / "ssl"],
            files=[stack_dir / "nginx.conf"],
            ignored=[stack_dir / "ssl" / "renewal.lock"],
        )
        return handler, loop

    def test_relevant_paths(self, stack_dir):
        handler, _ = self._handler(stack_dir)

        assert handler.is_relevant(stack_dir / "templates" / "default.conf.template")
        assert handler.is_relevant(stack_dir / "ssl" / "live" / "example.com" / "fullchain.pem")
        assert handler.is_relevant(stack_dir / "nginx.conf")
        assert not handler.is_relevant(stack_dir / "conf.d" / "default.conf")
        assert not handler.is_relevant(stack_dir / "docker-compose.yml")

    def test_lock_file_is_ignored(self, stack_dir):
        """Creating or removing the lock marker does not trigger a reload."""
        handler, loop = self._handler(stack_dir)

        handler.on_any_event(FileModifiedEvent(str(stack_dir / "ssl" / "renewal.lock")))

        loop.call_soon_threadsafe.assert_not_called()

    def test_modified_event_is_queued(self, stack_dir):
        handler, loop = self._handler(stack_dir)

        handler.on_any_event(FileModifiedEvent(str(stack_dir / "templates" / "a.conf.template")))

        loop.call_soon_threadsafe.assert_called_once()
        event = loop.call_soon_threadsafe.call_args.args[1]
        assert event.kind == WatchEventKind.MODIFIED
        assert event.path.endswith("a.conf.template")

    def test_move_into_watched_directory(self, stack_dir):
        """Editors that save via rename are picked up through the destination."""
        handler, loop = self._handler(stack_dir)

        handler.on_any_event(
            FileMovedEvent(str(stack_dir / "tmp.swp"), str(stack_dir / "templates" / "a.conf.template"))
        )

        event = loop.call_soon_threadsafe.call_args.args[1]
        assert event.kind == WatchEventKind.MOVED

    def test_close_events_are_ignored(self, stack_dir):
        handler, loop = self._handler(stack_dir)

        handler.on_any_event(FileClosedEvent(str(stack_dir / "templates" / "a.conf.template")))

        loop.call_soon_threadsafe.assert_not_called()


class TestWatchLoop:
    """End-to-end test with a real observer."""

    @pytest.mark.asyncio
    async def test_template_change_reloads(self, watcher, stack_dir, mock_backend):
        """Writing a template renders it and reloads nginx."""
        (stack_dir / ".env").write_text("SERVER_NAME=example.com\n")
        task = asyncio.create_task(watcher.run())
        try:
            # Give the observer thread time to register its watches
            await asyncio.sleep(0.2)
            (stack_dir / "templates" / "site.conf.template").write_text("server_name ${SERVER_NAME};\n")

            for _ in range(100):
                if watcher.reload_count:
                    break
                await asyncio.sleep(0.05)
        finally:
            watcher.stop()
            await asyncio.wait_for(task, timeout=5)

        assert watcher.reload_count >= 1
        assert Path(stack_dir / "conf.d" / "site.conf").read_text() == "server_name example.com;\n"
        assert watcher._observer is None
