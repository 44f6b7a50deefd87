# catalog_app/library_service.py
import asyncio
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .api_clients import initialize_api_clients
from .enums import ScanEventKind, ScanJobStatus
from .exceptions import CatalogError, FolderNotFoundError, ScanError
from .enrichment_queue import EnrichmentQueue
from .library_store import LibraryStore, new_id
from .metadata_fetcher import MetadataResolver
from .models import (
    ArtworkUrls, DuplicateGroup, LibraryFolder, MediaFile, NormalizedMetadata, ScanEvent, ScanJob, ScanOutcome
)
from .reconciler import ProgressCallback, ReconciliationEngine
from .utils import utc_now_iso

log = logging.getLogger(__name__)
TMDB_KEY_SETTING = "tmdbApiKey"
OMDB_KEY_SETTING = "omdbApiKey"


class ScanJobRegistry:
    """Bounded in-memory registry of background scan jobs.

    Finished jobs expire after ``ttl_seconds``; beyond ``max_entries`` the oldest
    finished jobs are dropped first. Running jobs are never evicted.
    """

    def __init__(self, max_entries: int = 50, ttl_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max(1, int(max_entries))
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._jobs: "OrderedDict[str, ScanJob]" = OrderedDict()
        self._finished_at: Dict[str, float] = {}

    def _evict(self):
        now = self._clock()
        for job_id, finished in list(self._finished_at.items()):
            if now - finished >= self.ttl_seconds:
                self._drop(job_id)
        if len(self._jobs) <= self.max_entries:
            return
        for job_id in [j for j in self._jobs if j in self._finished_at]:
            if len(self._jobs) <= self.max_entries:
                break
            self._drop(job_id)
        if len(self._jobs) > self.max_entries:
            log.warning(f"{len(self._jobs)} scan jobs still running; registry above its limit of {self.max_entries}.")

    def _drop(self, job_id: str):
        self._jobs.pop(job_id, None)
        self._finished_at.pop(job_id, None)
        log.debug(f"Evicted scan job {job_id}")

    def create(self, folder_id: str) -> ScanJob:
        job = ScanJob(id=new_id(), folder_id=folder_id, started_at=utc_now_iso())
        self._jobs[job.id] = job
        self._evict()
        return job

    def finish(self, job_id: str, outcome: Optional[ScanOutcome] = None, error: Optional[str] = None):
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.finished_at = utc_now_iso()
        job.outcome = outcome
        job.error_message = error
        job.status = ScanJobStatus.ERROR if error else ScanJobStatus.COMPLETED
        self._finished_at[job_id] = self._clock()

    def get(self, job_id: str) -> Optional[ScanJob]:
        self._evict()
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[ScanJob]:
        self._evict()
        return list(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)


class LibraryService:
    def __init__(self, store: LibraryStore, engine: ReconciliationEngine, queue: Optional[EnrichmentQueue] = None,
                 jobs: Optional[ScanJobRegistry] = None, resolver: Optional[MetadataResolver] = None):
        self.store = store
        self.engine = engine
        self.queue = queue
        self.jobs = jobs or ScanJobRegistry()
        self.resolver = resolver
        self._job_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, cfg_helper) -> "LibraryService":
        store = LibraryStore.from_config(cfg_helper)
        resolver: Optional[MetadataResolver] = None
        if cfg_helper('use_metadata', True):
            initialize_api_clients(cfg_helper, fallback_keys={
                'tmdb': store.get_setting(TMDB_KEY_SETTING), 'omdb': store.get_setting(OMDB_KEY_SETTING),
            })
            resolver = MetadataResolver(cfg_helper)
        engine = ReconciliationEngine(store, cfg_helper, resolver)
        queue = EnrichmentQueue.from_config(store, resolver, cfg_helper) if resolver and resolver.has_providers else None
        jobs = ScanJobRegistry(int(cfg_helper('scan_job_max_entries', 50)), float(cfg_helper('scan_job_ttl_seconds', 3600)))
        return cls(store, engine, queue, jobs, resolver)

    def close(self):
        if self.resolver is not None:
            self.resolver.close()

    async def _run_sync(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # --- Folders ---
    async def add_folder(self, path: Path, display_name: Optional[str] = None) -> LibraryFolder:
        folder_path = Path(path).expanduser()
        if not folder_path.is_dir():
            raise ScanError(f"Not a directory: {folder_path}")
        return await self._run_sync(self.store.add_folder, folder_path, display_name)

    async def list_folders(self) -> List[LibraryFolder]:
        return await self._run_sync(self.store.list_folders_ordered_by_creation)

    async def remove_folder(self, folder_id: str, delete_files: bool = False) -> int:
        return await self._run_sync(self.store.remove_folder, folder_id, delete_files)

    # --- Scanning ---
    async def rescan_folder(self, folder_id: str, progress: Optional[ProgressCallback] = None) -> ScanOutcome:
        folder = await self._run_sync(self.store.get_folder, folder_id)
        if folder is None:
            raise FolderNotFoundError(f"Library folder '{folder_id}' not found.")
        outcome = await self.engine.reconcile(folder, progress)
        if self.queue is not None and outcome.incomplete_ids:
            added = self.queue.enqueue(outcome.incomplete_ids)
            log.info(f"{added} record(s) queued for metadata enrichment.")
        return outcome

    async def rescan_all(self, progress: Optional[ProgressCallback] = None) -> Dict[str, ScanOutcome]:
        results: Dict[str, ScanOutcome] = {}
        for folder in await self.list_folders():
            results[folder.id] = await self.rescan_folder(folder.id, progress)
        return results

    def start_scan_job(self, folder_id: str, progress: Optional[ProgressCallback] = None) -> ScanJob:
        """Runs ``rescan_folder`` in the background and returns its job handle immediately."""
        job = self.jobs.create(folder_id)

        def _track(event: ScanEvent):
            if event.kind == ScanEventKind.FILE:
                job.files_seen += 1
            if progress:
                progress(event)

        async def _run():
            try:
                outcome = await self.rescan_folder(folder_id, _track)
            except CatalogError as e:
                log.error(f"Scan job {job.id} failed: {e}")
                self.jobs.finish(job.id, error=str(e))
            except Exception as e:
                log.exception(f"Unexpected error in scan job {job.id}")
                self.jobs.finish(job.id, error=f"Unexpected error: {type(e).__name__}")
            else:
                self.jobs.finish(job.id, outcome=outcome)

        task = asyncio.get_running_loop().create_task(_run())
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)
        log.info(f"Started scan job {job.id} for folder {folder_id}")
        return job

    def get_scan_job(self, job_id: str) -> Optional[ScanJob]:
        return self.jobs.get(job_id)

    async def wait_for_jobs(self):
        while self._job_tasks:
            await asyncio.gather(*list(self._job_tasks), return_exceptions=True)

    # --- Enrichment ---
    async def enqueue_incomplete(self) -> int:
        if self.queue is None:
            return 0
        files = await self._run_sync(self.store.list_incomplete_files)
        return self.queue.enqueue(files)

    # --- Reports ---
    async def find_duplicates(self) -> List[DuplicateGroup]:
        return await self._run_sync(self.store.find_duplicates)

    async def search(self, query: str) -> List[MediaFile]:
        return await self._run_sync(self.store.search, query)

    async def list_files(self, include_hidden: bool = False) -> List[MediaFile]:
        return await self._run_sync(self.store.list_all_files, include_hidden)

    # --- User actions ---
    async def hide_file(self, file_id: str, hidden: bool = True) -> bool:
        return await self._run_sync(self.store.set_hidden, file_id, hidden)

    async def set_favorite(self, file_id: str, favorite: bool = True) -> bool:
        return await self._run_sync(self.store.set_favorite, file_id, favorite)

    async def toggle_favorite(self, file_id: str) -> Optional[bool]:
        return await self._run_sync(self.store.toggle_favorite, file_id)

    async def remove_file(self, file_id: str) -> bool:
        return await self._run_sync(self.store.delete_files, [file_id]) > 0

    async def set_manual_metadata(self, file_id: str, metadata: NormalizedMetadata, artwork: Optional[ArtworkUrls] = None) -> bool:
        return await self._run_sync(self.store.set_manual_metadata, file_id, metadata, artwork)

    async def reset_library(self):
        if self.queue is not None:
            self.queue.clear()
        await self._run_sync(self.store.reset)
