"""
Filesystem watcher that keeps nginx in sync with templates and certificates.

A watchdog observer thread feeds events into an asyncio queue. The loop
waits for a burst of changes to settle, then renders, validates and
reloads nginx, unless a provisioning run holds the renewal lock.
"""

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from certkeeper.core.proxy_controller import ProxyController
from certkeeper.core.renewal_lock import RenewalLock
from certkeeper.models.watch import WatchEvent, WatchEventKind

logger = logging.getLogger(__name__)

_KIND_MAP = {
    "modified": WatchEventKind.MODIFIED,
    "created": WatchEventKind.CREATED,
    "deleted": WatchEventKind.DELETED,
    "moved": WatchEventKind.MOVED,
}


class _QueueingHandler(FileSystemEventHandler):
    """Forward relevant watchdog events from the observer thread into the event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        directories: Iterable[Path],
        files: Iterable[Path],
        ignored: Iterable[Path],
    ):
        self.loop = loop
        self.queue = queue
        self.directories = [p.absolute() for p in directories]
        self.files = {p.absolute() for p in files}
        self.ignored = {p.absolute() for p in ignored}

    def is_relevant(self, path: Path) -> bool:
        path = path.absolute()
        if path in self.ignored:
            return False
        if path in self.files:
            return True
        return any(path == d or d in path.parents for d in self.directories)

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = _KIND_MAP.get(event.event_type)
        if kind is None:
            # opened/closed events carry no change
            return

        paths = [event.src_path]
        if getattr(event, "dest_path", None):
            paths.append(event.dest_path)

        for raw in paths:
            path = Path(raw.decode() if isinstance(raw, bytes) else raw)
            if self.is_relevant(path):
                self.loop.call_soon_threadsafe(self.queue.put_nowait, WatchEvent(path=str(path), kind=kind))
                return


class ConfigWatcher:
    """
    Debounced, lock-aware reload loop.

    The debounce window doubles as the poll timeout: each wait for events
    lasts at most `debounce` seconds, and a burst only triggers once a full
    window passes without new events.
    """

    def __init__(
        self,
        proxy: ProxyController,
        lock: RenewalLock,
        paths: Iterable[str | Path],
        debounce: float = 2.0,
    ):
        self.proxy = proxy
        self.lock = lock
        self.paths = [Path(p) for p in paths]
        self.debounce = debounce
        self.queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        self.reload_count = 0
        self.skipped_count = 0
        self._stopping = asyncio.Event()
        self._observer = None

    def start_observer(self) -> None:
        """Schedule recursive watches on every existing path."""
        directories = [p for p in self.paths if p.is_dir()]
        files = [p for p in self.paths if p.exists() and not p.is_dir()]
        for path in self.paths:
            if not path.exists():
                logger.warning(f"Watch path does not exist, skipping: {path}")

        handler = _QueueingHandler(
            asyncio.get_running_loop(),
            self.queue,
            directories=directories,
            files=files,
            ignored=[self.lock.path],
        )

        observer = Observer()
        for directory in directories:
            observer.schedule(handler, str(directory), recursive=True)
        # Single files are watched through their parent directory
        for parent in {f.parent for f in files}:
            if any(parent == d or d in parent.parents for d in directories):
                continue
            observer.schedule(handler, str(parent), recursive=False)

        observer.start()
        self._observer = observer
        logger.info(f"Watching paths: {' '.join(str(p) for p in self.paths)}")

    def stop_observer(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    async def _next_event(self, timeout: float) -> WatchEvent | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def wait_for_changes(self) -> list[WatchEvent]:
        """
        Wait one debounce window for a change, then let the burst settle.

        Returns:
            The coalesced events, or an empty list if the window passed quietly
        """
        first = await self._next_event(self.debounce)
        if first is None:
            return []

        batch = [first]
        while not self._stopping.is_set():
            event = await self._next_event(self.debounce)
            if event is None:
                break
            batch.append(event)

        logger.debug(f"Coalesced {len(batch)} filesystem event(s)")
        return batch

    def _renewal_in_progress(self, events: list[WatchEvent]) -> bool:
        if not self.lock.is_held():
            return False
        logger.info(f"Renewal in progress, skipping reload for {len(events)} change(s)")
        self.skipped_count += 1
        return True

    async def handle_changes(self, events: list[WatchEvent]) -> bool:
        """
        React to a settled batch of changes.

        Returns:
            True if nginx was reloaded
        """
        if self._renewal_in_progress(events):
            return False

        result = await self.proxy.apply_config()
        if result.success:
            # Rendering and nginx -t take time; a provisioning run may have started meanwhile
            if self._renewal_in_progress(events):
                return False
            result = await self.proxy.send_reload()

        if not result.success:
            logger.warning(f"Reload skipped at {result.stage} stage: {result.message}")
            return False

        self.reload_count += 1
        logger.info("Nginx reloaded")
        return True

    async def run_once(self) -> bool:
        """One wait-and-react cycle. Never raises."""
        try:
            events = await self.wait_for_changes()
            if not events:
                return False
            return await self.handle_changes(events)
        except Exception:
            logger.exception("Watcher cycle failed, continuing")
            return False

    async def run(self) -> None:
        """Watch until stop() is called or the task is cancelled."""
        self.start_observer()
        try:
            while not self._stopping.is_set():
                await self.run_once()
        finally:
            self.stop_observer()
            logger.info("Watcher stopped")

    def stop(self) -> None:
        """Stop accepting new cycles; an in-flight reload is allowed to finish."""
        self._stopping.set()
