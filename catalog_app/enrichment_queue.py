# catalog_app/enrichment_queue.py
import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Iterable, List, Set, Union

from .enums import QueueState
from .exceptions import CatalogError
from .library_store import LibraryStore
from .metadata_fetcher import MetadataResolver
from .models import MediaFile, QueueStats

log = logging.getLogger(__name__)

StatsListener = Callable[[QueueStats], None]

SUCCEEDED, FAILED, SKIPPED = "succeeded", "failed", "skipped"


class EnrichmentQueue:
    """Background metadata enrichment for catalog records.

    Work is an ordered list of file ids drained by at most ``concurrency``
    workers. ``pause()`` stops workers from taking new items; items already in
    flight finish. Nothing runs until ``start()`` is called. Must be driven from
    inside a running event loop.
    """

    def __init__(self, store: LibraryStore, resolver: MetadataResolver, concurrency: int = 2, delay: float = 0.2):
        self.store = store
        self.resolver = resolver
        self.concurrency = max(1, int(concurrency))
        self.delay = max(0.0, float(delay))

        self._pending: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._workers: Set[asyncio.Task] = set()
        self._listeners: List[StatsListener] = []
        self._state = QueueState.IDLE
        self._paused = False
        self._generation = 0
        self._reset_counters()

    @classmethod
    def from_config(cls, store: LibraryStore, resolver: MetadataResolver, cfg_helper) -> "EnrichmentQueue":
        return cls(store, resolver,
                   concurrency=int(cfg_helper('enrichment_concurrency', 2)),
                   delay=float(cfg_helper('enrichment_delay', 0.2)))

    def _reset_counters(self):
        self._total = 0
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._skipped = 0

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> QueueStats:
        return QueueStats(
            total=self._total, processed=self._processed, succeeded=self._succeeded,
            failed=self._failed, skipped=self._skipped, running=self._state == QueueState.RUNNING,
        )

    def on_stats_changed(self, listener: StatsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self):
        stats = self.get_stats()
        for listener in list(self._listeners):
            try:
                listener(stats)
            except Exception:
                log.exception("Enrichment stats listener raised; continuing.")

    def enqueue(self, files: Iterable[Union[MediaFile, str]]) -> int:
        """Adds files (records or ids) not already queued. Manual records are ignored. Returns the count added."""
        added = 0
        for item in files:
            if isinstance(item, MediaFile):
                if item.is_manual:
                    log.debug(f"Not enqueueing manual record {item.id}")
                    continue
                file_id = item.id
            else:
                file_id = str(item)
            if file_id in self._queued:
                continue
            self._queued.add(file_id)
            self._pending.append(file_id)
            added += 1
        if not added:
            return 0
        self._total += added
        log.debug(f"Enqueued {added} file(s) for enrichment ({len(self._pending)} pending).")
        if self._state == QueueState.RUNNING:
            self._spawn_workers()
        self._notify()
        return added

    def start(self):
        self._paused = False
        if self._pending or self._workers:
            self._state = QueueState.RUNNING
            self._spawn_workers()
            log.info(f"Enrichment started ({len(self._pending)} pending, concurrency {self.concurrency}).")
        else:
            self._state = QueueState.IDLE
        self._notify()

    def pause(self):
        self._paused = True
        if self._state == QueueState.RUNNING:
            self._state = QueueState.PAUSED
            log.info("Enrichment paused; in-flight items will finish.")
        self._notify()

    def clear(self):
        """Drops all pending work and resets counters. Results of in-flight items are not counted."""
        self._pending.clear()
        self._queued.clear()
        self._generation += 1
        self._reset_counters()
        if not self._workers:
            self._state = QueueState.IDLE
        self._notify()

    async def wait_idle(self):
        """Returns once no worker is active (queue drained or paused)."""
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)

    def _spawn_workers(self):
        loop = asyncio.get_running_loop()
        wanted = min(self.concurrency, len(self._workers) + len(self._pending))
        while len(self._workers) < wanted:
            task = loop.create_task(self._worker())
            self._workers.add(task)

    async def _process(self, file_id: str) -> str:
        loop = asyncio.get_running_loop()
        record = await loop.run_in_executor(None, self.store.get_file, file_id)
        if record is None or record.is_manual:
            log.debug(f"Skipping enrichment of {file_id}: {'gone' if record is None else 'manual metadata'}.")
            return SKIPPED
        try:
            resolved = await self.resolver.resolve_file(record)
            if resolved is None:
                return FAILED
            written = await loop.run_in_executor(None, self.store.update_metadata, file_id, resolved)
        except CatalogError as e:
            log.warning(f"Enrichment of '{record.file_name}' failed: {e}")
            return FAILED
        if not written:
            return SKIPPED
        log.debug(f"Enriched '{record.file_name}' -> {resolved.metadata.title} ({resolved.source})")
        return SUCCEEDED

    def _count(self, result: str):
        self._processed += 1
        if result == SUCCEEDED:
            self._succeeded += 1
        elif result == SKIPPED:
            self._skipped += 1
        else:
            self._failed += 1

    async def _worker(self):
        current = asyncio.current_task()
        try:
            while not self._paused and self._pending:
                file_id = self._pending.popleft()
                generation = self._generation
                try:
                    result = await self._process(file_id)
                except Exception:
                    log.exception(f"Unexpected error enriching {file_id}")
                    result = FAILED
                self._queued.discard(file_id)
                if generation == self._generation:
                    self._count(result)
                self._notify()
                if self.delay > 0 and not self._paused and self._pending:
                    await asyncio.sleep(self.delay)
        finally:
            self._workers.discard(current)
            if not self._workers and self._state != QueueState.IDLE:
                # paused with nothing left to take is idle too
                if not self._pending:
                    self._state = QueueState.IDLE
                    log.info(f"Enrichment idle: {self._succeeded} succeeded, {self._failed} failed, {self._skipped} skipped.")
                self._notify()
