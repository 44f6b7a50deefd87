# catalog_app/file_scanner.py
import os
import logging
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Set

from .models import CandidateFile
from .utils import _is_ignored

log = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def scan_folder(root: Path, cfg_helper, on_warning: Optional[Callable[[str], None]] = None) -> Iterator[CandidateFile]:
    """Yields every video file under ``root`` that passes the extension and size filters.

    Unreadable directories and files that cannot be stat'ed are logged, reported
    through ``on_warning`` and skipped. Symlinked directories are not followed.
    """
    allowed_video_ext = {e.lower() for e in cfg_helper.get_list('video_extensions', default_value=[])}
    min_size_bytes = int(cfg_helper('min_file_size_mb', 200)) * BYTES_PER_MB
    ignore_dirs: Set[str] = set(d for d in cfg_helper.get_list('ignore_dirs', default_value=[]) if d)
    ignore_patterns: List[str] = list(cfg_helper.get_list('ignore_patterns', default_value=[]))

    def _warn(message: str):
        log.warning(message)
        if on_warning:
            on_warning(message)

    if not allowed_video_ext:
        log.warning("No video extensions configured. Scan will find nothing.")
        return

    base_path = Path(root)
    if not base_path.is_dir():
        _warn(f"Library folder is not a readable directory: {base_path}")
        return

    log.info(f"Scanning directory: {base_path} (min size {min_size_bytes // BYTES_PER_MB} MB)")
    found = 0
    walker = os.walk(base_path, topdown=True, onerror=lambda e: _warn(f"Cannot read directory '{e.filename}': {e.strerror}"))
    for dirpath, dirs, files in walker:
        current_dir_path = Path(dirpath)
        dirs[:] = [d for d in dirs if not _is_ignored(current_dir_path / d, ignore_dirs, ignore_patterns)]

        for filename in files:
            item_path = current_dir_path / filename
            if item_path.suffix.lower() not in allowed_video_ext:
                continue
            if _is_ignored(item_path, ignore_dirs, ignore_patterns):
                continue
            try:
                st = item_path.stat()
            except OSError as e:
                _warn(f"Cannot stat '{item_path}': {e}")
                continue
            if not item_path.is_file():
                continue
            if st.st_size < min_size_bytes:
                log.debug(f"  -> Skipping {item_path.name}: {st.st_size} bytes is below the size floor.")
                continue
            found += 1
            yield CandidateFile(path=item_path, size=st.st_size, mtime=st.st_mtime)

    log.info(f"Scan of '{base_path}' finished. Found {found} candidate file(s).")
