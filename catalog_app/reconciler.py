# catalog_app/reconciler.py
import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from .enums import ScanEventKind
from .exceptions import MetadataError, PersistenceError, ScanError
from .file_scanner import scan_folder
from .filename_parser import parse_filename
from .library_store import LibraryStore, new_id
from .metadata_fetcher import MetadataResolver
from .models import CandidateFile, LibraryFolder, MediaFile, ScanEvent, ScanOutcome
from .utils import iso_from_timestamp, utc_now_iso

log = logging.getLogger(__name__)

ProgressCallback = Callable[[ScanEvent], None]


class ReconciliationEngine:
    """Diffs one library folder on disk against its catalog rows and applies the result atomically.

    Found paths already in the folder are updates, paths known elsewhere in the
    catalog are moves, everything else is new. Rows of the folder whose path was
    not found are deleted. Hidden rows are left exactly as they are; manual
    metadata is never touched. A folder whose root has vanished (unmounted
    drive) raises ScanError before anything is deleted. Rescans of the same
    folder are serialized.
    """

    def __init__(self, store: LibraryStore, cfg_helper, resolver: Optional[MetadataResolver] = None):
        self.store = store
        self.cfg = cfg_helper
        self.resolver = resolver
        self.use_metadata = bool(self.cfg('use_metadata', True))
        self.inline_metadata = bool(self.cfg('inline_metadata', True))
        self.detect_relocations = bool(self.cfg('detect_relocations', True))
        self._folder_locks: Dict[str, asyncio.Lock] = {}

    @property
    def metadata_enabled(self) -> bool:
        return self.use_metadata and self.inline_metadata and self.resolver is not None and self.resolver.has_providers

    def _lock_for(self, folder_id: str) -> asyncio.Lock:
        lock = self._folder_locks.get(folder_id)
        if lock is None:
            lock = self._folder_locks[folder_id] = asyncio.Lock()
        return lock

    async def _run_sync(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _scan(self, root: Path) -> Tuple[List[CandidateFile], List[str]]:
        warnings: List[str] = []
        found = list(scan_folder(root, self.cfg, on_warning=warnings.append))
        return found, warnings

    async def _backfill(self, record: MediaFile, emit: ProgressCallback):
        """Best-effort metadata resolution; failures leave the record incomplete."""
        try:
            resolved = await self.resolver.resolve_file(record)
        except MetadataError as e:
            log.warning(f"Metadata lookup failed for '{record.file_name}': {e}")
            emit(ScanEvent(ScanEventKind.LOG, record.full_path, f"Metadata lookup failed for {record.file_name}"))
            return
        if resolved is not None:
            record.apply_resolved(resolved)
            emit(ScanEvent(ScanEventKind.LOG, record.full_path, f"Matched '{record.file_name}' -> {resolved.metadata.title}"))

    def _old_location_online(self, record: MediaFile) -> bool:
        """The directory that should still hold ``record`` is reachable (owning folder root, else parent dir)."""
        owner = self.store.get_folder(record.folder_id) if record.folder_id else None
        root = Path(owner.path) if owner is not None else Path(record.full_path).parent
        return root.is_dir()

    def _find_relocated(self, candidate: CandidateFile, folder_id: str, claimed: Set[str]) -> Optional[MediaFile]:
        """A record elsewhere with the same name and size whose old path no longer exists.

        A record whose folder root is offline (unmounted drive) is a separate copy, not a move.
        """
        matches = []
        for r in self.store.find_relocation_candidates(candidate.path.name, candidate.size, folder_id):
            if r.id in claimed or r.is_hidden or Path(r.full_path).exists():
                continue
            if not self._old_location_online(r):
                log.debug(f"Not treating '{r.full_path}' as moved: its folder is offline.")
                continue
            matches.append(r)
        if not matches:
            return None
        if len(matches) > 1:
            log.info(f"Multiple vanished records match '{candidate.path.name}'; using '{sorted(matches, key=lambda r: r.full_path)[0].full_path}'.")
        return sorted(matches, key=lambda r: r.full_path)[0]

    def _commit(self, upserts: List[MediaFile], removed_ids: List[str]) -> List[str]:
        with self.store.transaction() as conn:
            stored_ids = [self.store.upsert_file(record, conn=conn) for record in upserts]
            self.store.delete_files(removed_ids, conn=conn)
        return stored_ids

    async def reconcile(self, folder: LibraryFolder, progress: Optional[ProgressCallback] = None) -> ScanOutcome:
        async with self._lock_for(folder.id):
            return await self._reconcile(folder, progress)

    async def _reconcile(self, folder: LibraryFolder, progress: Optional[ProgressCallback]) -> ScanOutcome:
        def emit(event: ScanEvent):
            if progress:
                progress(event)

        emit(ScanEvent(ScanEventKind.START, folder.path))
        log.info(f"Reconciling folder '{folder.display_name}' ({folder.path})")

        if not await self._run_sync(Path(folder.path).is_dir):
            message = f"Library folder is missing or not a directory: {folder.path}"
            emit(ScanEvent(ScanEventKind.ERROR, folder.path, message))
            raise ScanError(message)

        found, warnings = await self._run_sync(self._scan, Path(folder.path))
        for message in warnings:
            emit(ScanEvent(ScanEventKind.LOG, folder.path, message))

        existing = await self._run_sync(self.store.list_files_by_folder, folder.id)
        existing_by_path: Dict[str, MediaFile] = {r.full_path: r for r in existing}

        outcome = ScanOutcome()
        upserts: List[MediaFile] = []
        found_paths: Set[str] = set()
        claimed: Set[str] = set()
        now = utc_now_iso()

        for candidate in found:
            full_path = str(candidate.path)
            if full_path in found_paths:
                continue
            found_paths.add(full_path)
            emit(ScanEvent(ScanEventKind.FILE, full_path))
            fs_facts = dict(folder_id=folder.id, full_path=full_path, file_name=candidate.path.name,
                            file_size_bytes=candidate.size, modified_at=iso_from_timestamp(candidate.mtime), last_seen_at=now)

            current = existing_by_path.get(full_path)
            if current is not None:
                outcome.updated += 1
                claimed.add(current.id)
                if current.is_hidden:
                    continue
                record = replace(current, **fs_facts)
                if record.is_metadata_incomplete and self.metadata_enabled:
                    await self._backfill(record, emit)
                upserts.append(record)
                continue

            moved = await self._run_sync(self.store.find_file_by_path, full_path)
            if moved is None and self.detect_relocations:
                moved = await self._run_sync(self._find_relocated, candidate, folder.id, claimed)
                if moved is not None:
                    emit(ScanEvent(ScanEventKind.LOG, full_path, f"Detected move: {moved.full_path} -> {full_path}"))
            if moved is not None:
                outcome.updated += 1
                claimed.add(moved.id)
                if not moved.is_hidden:
                    upserts.append(replace(moved, **fs_facts))
                log.debug(f"File {moved.id} now belongs to folder {folder.id} at '{full_path}'")
                continue

            parsed = parse_filename(candidate.path.name)
            record = MediaFile(
                id=new_id(), extension=candidate.path.suffix.lower(),
                guessed_title=parsed.guessed_title, guessed_year=parsed.guessed_year, media_kind=parsed.media_kind,
                series_title=parsed.series_title, season_number=parsed.season_number,
                episode_number=parsed.episode_number, parsing_confidence=parsed.confidence,
                **fs_facts,
            )
            if self.metadata_enabled:
                await self._backfill(record, emit)
            upserts.append(record)
            outcome.new += 1

        removed_ids = [r.id for path, r in existing_by_path.items() if path not in found_paths and not r.is_hidden]

        try:
            stored_ids = await self._run_sync(self._commit, upserts, removed_ids)
        except PersistenceError as e:
            log.error(f"Reconciliation of '{folder.path}' failed and was rolled back: {e}")
            emit(ScanEvent(ScanEventKind.ERROR, folder.path, f"Saving scan results failed: {e}"))
            raise

        outcome.removed = len(removed_ids)
        outcome.incomplete_ids = [sid for sid, record in zip(stored_ids, upserts) if record.is_metadata_incomplete]
        log.info(f"Folder '{folder.display_name}': {outcome.new} new, {outcome.updated} updated, {outcome.removed} removed.")
        emit(ScanEvent(ScanEventKind.DONE, folder.path, f"{outcome.new} new, {outcome.updated} updated, {outcome.removed} removed"))
        return outcome
