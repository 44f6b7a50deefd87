# catalog_app/library_store.py
import json
import sqlite3
import logging
import threading
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import replace
from pathlib import Path
from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import platformdirs

from .enums import MediaKind, MetadataSource
from .exceptions import FolderNotFoundError, PersistenceError
from .models import (
    ArtworkUrls, DuplicateGroup, LibraryFolder, MediaFile, NormalizedMetadata, ResolvedMetadata
)
from .utils import normalize_name, utc_now_iso

log = logging.getLogger(__name__)
DEFAULT_DB_FILENAME = "library.db"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS library_folders (
        id TEXT PRIMARY KEY, path TEXT NOT NULL UNIQUE, display_name TEXT NOT NULL, created_at TEXT NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS media_files (
        id TEXT PRIMARY KEY, full_path TEXT NOT NULL UNIQUE, file_name TEXT NOT NULL, folder_id TEXT NULL,
        extension TEXT, file_size_bytes INTEGER, modified_at TEXT, last_seen_at TEXT,
        guessed_title TEXT, guessed_year INTEGER, media_kind TEXT CHECK(media_kind IN ('movie', 'episode')) NOT NULL DEFAULT 'movie',
        series_title TEXT, season_number INTEGER, episode_number INTEGER, parsing_confidence REAL,
        metadata_json TEXT NULL, metadata_source TEXT CHECK(metadata_source IN ('tmdb', 'omdb', 'manual')) NULL,
        primary_artwork_url TEXT NULL, secondary_artwork_url TEXT NULL,
        is_favorite INTEGER NOT NULL DEFAULT 0, is_hidden INTEGER NOT NULL DEFAULT 0
    )""",
    "CREATE INDEX IF NOT EXISTS idx_media_files_folder ON media_files(folder_id)",
    "CREATE INDEX IF NOT EXISTS idx_media_files_name_size ON media_files(file_name, file_size_bytes)",
    "CREATE TABLE IF NOT EXISTS settings (key TEXT PRIMARY KEY, value TEXT)",
)

_FILE_COLUMNS = (
    "id", "full_path", "file_name", "folder_id", "extension", "file_size_bytes", "modified_at", "last_seen_at",
    "guessed_title", "guessed_year", "media_kind", "series_title", "season_number", "episode_number",
    "parsing_confidence", "metadata_json", "metadata_source", "primary_artwork_url", "secondary_artwork_url",
    "is_favorite", "is_hidden",
)

# Filesystem and parsed facts follow the incoming record. Metadata only fills gaps
# and is frozen for manual records. User flags are never written by an upsert.
_MERGE_ASSIGNMENTS = """
    file_name = excluded.file_name, folder_id = excluded.folder_id, extension = excluded.extension,
    file_size_bytes = excluded.file_size_bytes, modified_at = excluded.modified_at, last_seen_at = excluded.last_seen_at,
    guessed_title = COALESCE(excluded.guessed_title, media_files.guessed_title),
    guessed_year = COALESCE(excluded.guessed_year, media_files.guessed_year),
    media_kind = excluded.media_kind,
    series_title = COALESCE(excluded.series_title, media_files.series_title),
    season_number = COALESCE(excluded.season_number, media_files.season_number),
    episode_number = COALESCE(excluded.episode_number, media_files.episode_number),
    parsing_confidence = COALESCE(excluded.parsing_confidence, media_files.parsing_confidence),
    metadata_json = CASE WHEN media_files.metadata_source = 'manual' THEN media_files.metadata_json
                         ELSE COALESCE(excluded.metadata_json, media_files.metadata_json) END,
    metadata_source = CASE WHEN media_files.metadata_source = 'manual' THEN media_files.metadata_source
                           ELSE COALESCE(excluded.metadata_source, media_files.metadata_source) END,
    primary_artwork_url = CASE WHEN media_files.metadata_source = 'manual' THEN media_files.primary_artwork_url
                               ELSE COALESCE(excluded.primary_artwork_url, media_files.primary_artwork_url) END,
    secondary_artwork_url = CASE WHEN media_files.metadata_source = 'manual' THEN media_files.secondary_artwork_url
                                 ELSE COALESCE(excluded.secondary_artwork_url, media_files.secondary_artwork_url) END
"""


def new_id() -> str:
    return uuid.uuid4().hex


def default_db_path() -> Path:
    return Path(platformdirs.user_data_dir("catalog_app", "catalog_app")) / DEFAULT_DB_FILENAME


def _row_to_file(row: sqlite3.Row) -> MediaFile:
    metadata = None
    if row["metadata_json"]:
        try:
            metadata = NormalizedMetadata.from_dict(json.loads(row["metadata_json"]))
        except (ValueError, TypeError) as e:
            log.warning(f"Ignoring unreadable metadata for file {row['id']}: {e}")
    return MediaFile(
        id=row["id"], full_path=row["full_path"], file_name=row["file_name"], folder_id=row["folder_id"],
        extension=row["extension"], file_size_bytes=row["file_size_bytes"], modified_at=row["modified_at"],
        last_seen_at=row["last_seen_at"], guessed_title=row["guessed_title"], guessed_year=row["guessed_year"],
        media_kind=MediaKind(row["media_kind"] or MediaKind.MOVIE.value), series_title=row["series_title"],
        season_number=row["season_number"], episode_number=row["episode_number"],
        parsing_confidence=row["parsing_confidence"], metadata=metadata,
        metadata_source=MetadataSource(row["metadata_source"]) if row["metadata_source"] else None,
        primary_artwork_url=row["primary_artwork_url"], secondary_artwork_url=row["secondary_artwork_url"],
        is_favorite=bool(row["is_favorite"]), is_hidden=bool(row["is_hidden"]),
    )


def _row_to_folder(row: sqlite3.Row) -> LibraryFolder:
    return LibraryFolder(id=row["id"], path=row["path"], display_name=row["display_name"], created_at=row["created_at"])


def _file_params(record: MediaFile) -> Tuple:
    return (
        record.id, record.full_path, record.file_name, record.folder_id, record.extension, record.file_size_bytes,
        record.modified_at, record.last_seen_at, record.guessed_title, record.guessed_year,
        MediaKind(record.media_kind).value, record.series_title, record.season_number, record.episode_number,
        record.parsing_confidence,
        json.dumps(record.metadata.to_dict()) if record.metadata else None,
        record.metadata_source.value if record.metadata_source else None,
        record.primary_artwork_url, record.secondary_artwork_url,
        int(record.is_favorite), int(record.is_hidden),
    )


_UPDATE_COLUMNS = _FILE_COLUMNS[1:-2]


def _merge_records(existing: MediaFile, incoming: MediaFile) -> MediaFile:
    """Merge rules for an incoming record landing on an existing row (same path or same id)."""
    manual = existing.is_manual
    return replace(
        incoming,
        guessed_title=incoming.guessed_title or existing.guessed_title,
        guessed_year=incoming.guessed_year if incoming.guessed_year is not None else existing.guessed_year,
        series_title=incoming.series_title or existing.series_title,
        season_number=incoming.season_number if incoming.season_number is not None else existing.season_number,
        episode_number=incoming.episode_number if incoming.episode_number is not None else existing.episode_number,
        parsing_confidence=incoming.parsing_confidence if incoming.parsing_confidence is not None else existing.parsing_confidence,
        metadata=existing.metadata if manual else (incoming.metadata or existing.metadata),
        metadata_source=existing.metadata_source if manual else (incoming.metadata_source or existing.metadata_source),
        primary_artwork_url=existing.primary_artwork_url if manual else (incoming.primary_artwork_url or existing.primary_artwork_url),
        secondary_artwork_url=existing.secondary_artwork_url if manual else (incoming.secondary_artwork_url or existing.secondary_artwork_url),
        is_favorite=existing.is_favorite,
        is_hidden=existing.is_hidden,
    )


class LibraryStore:
    """sqlite-backed catalog of library folders and media files.

    Every call opens its own connection unless an open ``conn`` from
    ``transaction()`` is passed in. Writes are serialized with a process-wide lock.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).resolve()
        self._write_lock = threading.RLock()
        self._init_db()
        log.info(f"Library store ready (DB: {self.db_path})")

    @classmethod
    def from_config(cls, cfg_helper) -> "LibraryStore":
        db_path_config = cfg_helper('library_db_path', None)
        return cls(Path(db_path_config) if db_path_config else default_db_path())

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot connect to library database '{self.db_path}': {e}") from e
        conn.row_factory = sqlite3.Row
        try: conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.Error as pe: log.warning(f"Could not set PRAGMA journal_mode=WAL for library DB ({self.db_path}): {pe}")
        try: conn.execute("PRAGMA busy_timeout=5000;")
        except sqlite3.Error as pe: log.warning(f"Could not set PRAGMA busy_timeout=5000 for library DB ({self.db_path}): {pe}")
        return conn

    def _init_db(self):
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create library database directory '{self.db_path.parent}': {e}") from e
        with self._session(write=True) as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _session(self, conn: Optional[sqlite3.Connection] = None, write: bool = False) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with (self._write_lock if write else nullcontext()):
            own_conn = self._connect()
            try:
                yield own_conn
                if write:
                    own_conn.commit()
            except sqlite3.Error as e:
                own_conn.rollback()
                raise PersistenceError(f"Library database error: {e}") from e
            finally:
                own_conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One atomic write unit. Any failure rolls back everything done through ``conn``."""
        with self._write_lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                log.error(f"Library transaction rolled back: {e}")
                raise PersistenceError(f"Library transaction failed: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    # --- Folders ---
    def list_folders_ordered_by_creation(self) -> List[LibraryFolder]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM library_folders ORDER BY created_at, rowid").fetchall()
        return [_row_to_folder(r) for r in rows]

    def get_folder(self, folder_id: str) -> Optional[LibraryFolder]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM library_folders WHERE id = ?", (folder_id,)).fetchone()
        return _row_to_folder(row) if row else None

    def add_folder(self, path: Path, display_name: Optional[str] = None) -> LibraryFolder:
        resolved = str(Path(path).expanduser().resolve())
        with self._session(write=True) as conn:
            row = conn.execute("SELECT * FROM library_folders WHERE path = ?", (resolved,)).fetchone()
            if row:
                log.info(f"Folder already in library: {resolved}")
                return _row_to_folder(row)
            folder = LibraryFolder(id=new_id(), path=resolved, display_name=display_name or Path(resolved).name or resolved,
                                   created_at=utc_now_iso())
            conn.execute("INSERT INTO library_folders (id, path, display_name, created_at) VALUES (?, ?, ?, ?)",
                         (folder.id, folder.path, folder.display_name, folder.created_at))
        log.info(f"Added library folder '{folder.display_name}' ({folder.path})")
        return folder

    def remove_folder(self, folder_id: str, delete_files: bool = False) -> int:
        """Removes a folder. Its files are hard-deleted or detached (folder_id NULL). Returns affected file count."""
        with self.transaction() as conn:
            if not conn.execute("SELECT 1 FROM library_folders WHERE id = ?", (folder_id,)).fetchone():
                raise FolderNotFoundError(f"Library folder '{folder_id}' not found.")
            if delete_files:
                cur = conn.execute("DELETE FROM media_files WHERE folder_id = ?", (folder_id,))
            else:
                cur = conn.execute("UPDATE media_files SET folder_id = NULL WHERE folder_id = ?", (folder_id,))
            conn.execute("DELETE FROM library_folders WHERE id = ?", (folder_id,))
        affected = cur.rowcount
        log.info(f"Removed library folder {folder_id} ({affected} file(s) {'deleted' if delete_files else 'detached'}).")
        return affected

    # --- Files: reads ---
    def list_files_by_folder(self, folder_id: str, conn: Optional[sqlite3.Connection] = None) -> List[MediaFile]:
        with self._session(conn) as c:
            rows = c.execute("SELECT * FROM media_files WHERE folder_id = ?", (folder_id,)).fetchall()
        return [_row_to_file(r) for r in rows]

    def find_file_by_path(self, full_path: str, conn: Optional[sqlite3.Connection] = None) -> Optional[MediaFile]:
        with self._session(conn) as c:
            row = c.execute("SELECT * FROM media_files WHERE full_path = ?", (str(full_path),)).fetchone()
        return _row_to_file(row) if row else None

    def get_file(self, file_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[MediaFile]:
        with self._session(conn) as c:
            row = c.execute("SELECT * FROM media_files WHERE id = ?", (file_id,)).fetchone()
        return _row_to_file(row) if row else None

    def list_all_files(self, include_hidden: bool = True) -> List[MediaFile]:
        sql = "SELECT * FROM media_files" + ("" if include_hidden else " WHERE is_hidden = 0") + " ORDER BY file_name"
        with self._session() as conn:
            rows = conn.execute(sql).fetchall()
        return [_row_to_file(r) for r in rows]

    def list_incomplete_files(self) -> List[MediaFile]:
        """Visible, non-manual records without metadata or poster."""
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM media_files WHERE is_hidden = 0 AND (metadata_source IS NULL OR metadata_source != 'manual') "
                "AND (metadata_json IS NULL OR primary_artwork_url IS NULL) ORDER BY rowid"
            ).fetchall()
        return [_row_to_file(r) for r in rows]

    def find_relocation_candidates(self, file_name: str, file_size_bytes: int, exclude_folder_id: Optional[str],
                                   conn: Optional[sqlite3.Connection] = None) -> List[MediaFile]:
        with self._session(conn) as c:
            rows = c.execute(
                "SELECT * FROM media_files WHERE file_name = ? AND file_size_bytes = ? AND (folder_id IS NULL OR folder_id != ?)",
                (file_name, file_size_bytes, exclude_folder_id or ""),
            ).fetchall()
        return [_row_to_file(r) for r in rows]

    def find_duplicates(self) -> List[DuplicateGroup]:
        groups: Dict[Tuple[str, int], List[MediaFile]] = defaultdict(list)
        for f in self.list_all_files(include_hidden=True):
            if f.file_size_bytes is None:
                continue
            groups[(normalize_name(f.file_name), f.file_size_bytes)].append(f)
        result = [
            DuplicateGroup(normalized_name=name, file_size_bytes=size, files=sorted(files, key=lambda x: x.full_path))
            for (name, size), files in groups.items() if len(files) > 1
        ]
        return sorted(result, key=lambda g: (g.normalized_name, g.file_size_bytes))

    def search(self, query: str, include_hidden: bool = False) -> List[MediaFile]:
        needle = (query or "").strip().lower()
        if not needle:
            return []
        hits = []
        for f in self.list_all_files(include_hidden=include_hidden):
            haystack = [f.display_title, f.file_name, f.guessed_title or "", f.series_title or ""]
            if f.metadata:
                haystack.append(f.metadata.title)
                haystack.extend(c.name for c in f.metadata.cast)
            if any(needle in h.lower() for h in haystack if h):
                hits.append(f)
        return hits

    # --- Files: writes ---
    def upsert_file(self, record: MediaFile, conn: Optional[sqlite3.Connection] = None) -> str:
        """Inserts or merges ``record`` keyed by full_path. Returns the id actually stored.

        If another row already owns the path, that row's id wins and the payload is
        merged onto it. If the record's id exists under a different path, the row
        is moved to the new path. User flags of an existing row are never changed.
        """
        with self._session(conn, write=True) as c:
            existing_row = c.execute("SELECT * FROM media_files WHERE full_path = ?", (record.full_path,)).fetchone()
            if existing_row is None:
                existing_row = c.execute("SELECT * FROM media_files WHERE id = ?", (record.id,)).fetchone()

            if existing_row is not None:
                existing = _row_to_file(existing_row)
                if existing.id != record.id:
                    log.debug(f"Path collision for '{record.full_path}': keeping existing id {existing.id} over {record.id}")
                elif existing.full_path != record.full_path:
                    log.debug(f"Moving file {existing.id} from '{existing.full_path}' to '{record.full_path}'")
                merged = _merge_records(existing, record)
                params = _file_params(merged)
                c.execute(
                    f"UPDATE media_files SET {', '.join(f'{col} = ?' for col in _UPDATE_COLUMNS)} WHERE id = ?",
                    (*params[1:len(_UPDATE_COLUMNS) + 1], existing.id),
                )
                record.id = existing.id
                return existing.id

            placeholders = ", ".join("?" for _ in _FILE_COLUMNS)
            c.execute(
                f"INSERT INTO media_files ({', '.join(_FILE_COLUMNS)}) VALUES ({placeholders}) "
                f"ON CONFLICT(full_path) DO UPDATE SET {_MERGE_ASSIGNMENTS}",
                _file_params(record),
            )
        return record.id

    def delete_files(self, ids: Iterable[str], conn: Optional[sqlite3.Connection] = None) -> int:
        id_list = list(ids)
        if not id_list:
            return 0
        with self._session(conn, write=True) as c:
            cur = c.executemany("DELETE FROM media_files WHERE id = ?", [(i,) for i in id_list])
            deleted = cur.rowcount
        log.debug(f"Deleted {deleted} media file row(s).")
        return deleted

    def update_metadata(self, file_id: str, resolved: ResolvedMetadata, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Writes only metadata columns; refuses manual records. Artwork is kept when the new value is missing."""
        with self._session(conn, write=True) as c:
            cur = c.execute(
                "UPDATE media_files SET metadata_json = ?, metadata_source = ?, "
                "primary_artwork_url = COALESCE(?, primary_artwork_url), secondary_artwork_url = COALESCE(?, secondary_artwork_url) "
                "WHERE id = ? AND (metadata_source IS NULL OR metadata_source != 'manual')",
                (json.dumps(resolved.metadata.to_dict()), resolved.source.value,
                 resolved.artwork.primary_artwork_url, resolved.artwork.secondary_artwork_url, file_id),
            )
            return cur.rowcount > 0

    def set_manual_metadata(self, file_id: str, metadata: NormalizedMetadata, artwork: Optional[ArtworkUrls] = None) -> bool:
        artwork = artwork or ArtworkUrls()
        with self._session(write=True) as conn:
            cur = conn.execute(
                "UPDATE media_files SET metadata_json = ?, metadata_source = 'manual', "
                "primary_artwork_url = COALESCE(?, primary_artwork_url), secondary_artwork_url = COALESCE(?, secondary_artwork_url) "
                "WHERE id = ?",
                (json.dumps(metadata.to_dict()), artwork.primary_artwork_url, artwork.secondary_artwork_url, file_id),
            )
            return cur.rowcount > 0

    def set_hidden(self, file_id: str, hidden: bool = True) -> bool:
        with self._session(write=True) as conn:
            return conn.execute("UPDATE media_files SET is_hidden = ? WHERE id = ?", (int(hidden), file_id)).rowcount > 0

    def set_favorite(self, file_id: str, favorite: bool = True) -> bool:
        with self._session(write=True) as conn:
            return conn.execute("UPDATE media_files SET is_favorite = ? WHERE id = ?", (int(favorite), file_id)).rowcount > 0

    def toggle_favorite(self, file_id: str) -> Optional[bool]:
        """Flips the favorite flag. Returns the new state, or None if the file is unknown."""
        with self._session(write=True) as conn:
            row = conn.execute("SELECT is_favorite FROM media_files WHERE id = ?", (file_id,)).fetchone()
            if row is None:
                return None
            new_state = not bool(row["is_favorite"])
            conn.execute("UPDATE media_files SET is_favorite = ? WHERE id = ?", (int(new_state), file_id))
        return new_state

    def reset(self):
        with self.transaction() as conn:
            conn.execute("DELETE FROM media_files")
            conn.execute("DELETE FROM library_folders")
        log.warning("Library reset: all folders and files removed.")

    # --- Settings ---
    def get_setting(self, key: str) -> Optional[str]:
        with self._session() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: Optional[str]):
        with self._session(write=True) as conn:
            if value is None:
                conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            else:
                conn.execute("INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                             (key, value))
