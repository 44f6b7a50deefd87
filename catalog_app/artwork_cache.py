# catalog_app/artwork_cache.py
import logging
import threading
from typing import Dict, Optional

from .models import ArtworkUrls

log = logging.getLogger(__name__)


class ArtworkCache:
    """Process-lifetime artwork lookup results, keyed by external id and by show id.

    Empty results are cached as well so a title without artwork is looked up once.
    Entries are never invalidated.
    """

    def __init__(self):
        self._by_external_id: Dict[str, ArtworkUrls] = {}
        self._by_show: Dict[int, ArtworkUrls] = {}
        self._lock = threading.Lock()

    def get(self, external_id: str) -> Optional[ArtworkUrls]:
        with self._lock:
            return self._by_external_id.get(external_id)

    def put(self, external_id: str, artwork: ArtworkUrls):
        with self._lock:
            self._by_external_id[external_id] = artwork
        log.debug(f"Artwork cached for {external_id} (empty={artwork.is_empty()})")

    def get_show(self, show_id: int) -> Optional[ArtworkUrls]:
        with self._lock:
            return self._by_show.get(show_id)

    def put_show(self, show_id: int, artwork: ArtworkUrls):
        with self._lock:
            self._by_show[show_id] = artwork
        log.debug(f"Show artwork cached for show {show_id} (empty={artwork.is_empty()})")

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_external_id) + len(self._by_show)
