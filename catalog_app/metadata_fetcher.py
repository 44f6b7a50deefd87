# catalog_app/metadata_fetcher.py

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional

import diskcache
import platformdirs

from .api_clients import OmdbClient, TmdbClient, get_omdb_client, get_tmdb_client
from .artwork_cache import ArtworkCache
from .enums import MediaKind, MetadataSource
from .exceptions import MetadataError, ProviderError
from .models import ArtworkUrls, MediaFile, NormalizedMetadata, ResolvedMetadata
from .utils import clean_value, parse_runtime

log = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "resolve::v1"


class MetadataResolver:
    """Turns a parsed title into normalized metadata plus artwork.

    Providers are tried in order: TMDB (search, then details with credits and
    external ids), then OMDb. When OMDb supplies an IMDb id, TMDB's external-id
    lookup is used to find artwork. Episodes fall back to show-level artwork,
    cached per show. Provider failures are logged and treated as "no match".
    """

    def __init__(self, cfg_helper, tmdb: Optional[TmdbClient] = None, omdb: Optional[OmdbClient] = None,
                 artwork_cache: Optional[ArtworkCache] = None):
        self.cfg = cfg_helper
        self.tmdb = tmdb if tmdb is not None else get_tmdb_client()
        self.omdb = omdb if omdb is not None else get_omdb_client()
        self.artwork_cache = artwork_cache if artwork_cache is not None else ArtworkCache()

        self.cache: Optional[diskcache.Cache] = None
        self.cache_enabled = bool(self.cfg('cache_enabled', True))
        self.cache_expire = int(self.cfg('cache_expire_seconds', 60 * 60 * 24 * 7))
        if self.cache_enabled:
            cache_dir_config = self.cfg('cache_directory', None)
            if cache_dir_config:
                cache_dir_path = Path(str(cache_dir_config)).resolve()
            else:
                cache_dir_path = Path(platformdirs.user_cache_dir("catalog_app", "catalog_app"))
            try:
                cache_dir_path.mkdir(parents=True, exist_ok=True)
                self.cache = diskcache.Cache(str(cache_dir_path))
                log.info(f"Persistent cache initialized at: {cache_dir_path} (Expiration: {self.cache_expire}s)")
            except (OSError, sqlite3.Error) as e:
                log.error(f"Failed to initialize disk cache at '{cache_dir_path}': {e}. Disabling cache.")
                self.cache = None
                self.cache_enabled = False
        else:
            log.info("Persistent caching disabled by configuration.")

    @property
    def has_providers(self) -> bool:
        return self.tmdb is not None or self.omdb is not None

    def close(self):
        if self.cache is not None:
            self.cache.close()
            self.cache = None

    async def _run_sync(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    # --- Response cache ---
    @staticmethod
    def _cache_key(kind: MediaKind, title: str, year: Optional[int], season: Optional[int], episode: Optional[int]) -> str:
        return f"{CACHE_KEY_PREFIX}::{kind.value}::{title.strip().lower()}::{year}::{season}::{episode}"

    async def _get_cache(self, key: str) -> Optional[ResolvedMetadata]:
        if not self.cache_enabled or self.cache is None:
            return None
        try:
            cached_value = await self._run_sync(self.cache.get, key)
        except sqlite3.Error as e:
            log.warning(f"Error getting from cache key '{key}': {e}")
            return None
        if not isinstance(cached_value, dict):
            log.debug(f"Cache MISS for key: {key}")
            return None
        metadata = NormalizedMetadata.from_dict(cached_value.get('metadata'))
        if metadata is None:
            log.warning(f"Cache data for {key} has unexpected structure. Ignoring cache.")
            await self._run_sync(self.cache.delete, key)
            return None
        log.debug(f"Cache HIT for key: {key}")
        return ResolvedMetadata(
            metadata=metadata,
            source=MetadataSource(cached_value.get('source', MetadataSource.TMDB.value)),
            artwork=ArtworkUrls(**(cached_value.get('artwork') or {})),
        )

    async def _set_cache(self, key: str, resolved: ResolvedMetadata):
        if not self.cache_enabled or self.cache is None:
            return
        value = {
            'metadata': resolved.metadata.to_dict(),
            'source': resolved.source.value,
            'artwork': {'primary_artwork_url': resolved.artwork.primary_artwork_url,
                        'secondary_artwork_url': resolved.artwork.secondary_artwork_url},
        }
        try:
            await self._run_sync(self.cache.set, key, value, expire=self.cache_expire)
            log.debug(f"Cache SET for key: {key}")
        except sqlite3.Error as e:
            log.warning(f"Error setting cache key '{key}': {e}")

    # --- Artwork ---
    async def _show_artwork(self, show_id: int, show_raw: Optional[Dict[str, Any]] = None) -> ArtworkUrls:
        cached = self.artwork_cache.get_show(show_id)
        if cached is not None:
            return cached
        artwork = TmdbClient.artwork_from_details(show_raw) if show_raw else ArtworkUrls()
        if artwork.is_empty() and self.tmdb is not None:
            try:
                artwork = await self.tmdb.images(show_id, MediaKind.EPISODE)
            except ProviderError as e:
                log.warning(f"Show artwork lookup failed for show {show_id}: {e}")
                return artwork
        self.artwork_cache.put_show(show_id, artwork)
        return artwork

    async def artwork_for_external_id(self, external_id: str) -> ArtworkUrls:
        cached = self.artwork_cache.get(external_id)
        if cached is not None:
            return cached
        if self.tmdb is None:
            return ArtworkUrls()
        try:
            kind, tmdb_id = await self.tmdb.find_by_external_id(external_id)
            if not tmdb_id:
                artwork = ArtworkUrls()
            elif kind == MediaKind.EPISODE:
                artwork = await self._show_artwork(tmdb_id)
            else:
                artwork = await self.tmdb.images(tmdb_id, MediaKind.MOVIE)
        except ProviderError as e:
            log.warning(f"Artwork lookup failed for {external_id}: {e}")
            return ArtworkUrls()
        self.artwork_cache.put(external_id, artwork)
        return artwork

    # --- Provider chain ---
    async def _resolve_tmdb(self, title: str, year: Optional[int], kind: MediaKind,
                            season: Optional[int], episode: Optional[int]) -> Optional[ResolvedMetadata]:
        if self.tmdb is None:
            return None
        candidate = await self.tmdb.search(title, year, kind)
        if not candidate or candidate.get('id') is None:
            return None
        raw = await self.tmdb.fetch_details_raw(candidate['id'], kind)
        if not raw:
            return None
        metadata = self.tmdb.to_metadata(raw, kind)
        if metadata is None:
            return None

        if kind == MediaKind.EPISODE:
            if season is not None and episode is not None:
                ep = await self.tmdb.episode(raw['id'], season, episode)
                if ep:
                    metadata.episode_title = clean_value(ep.get('name'))
                    metadata.plot = clean_value(ep.get('overview')) or metadata.plot
                    metadata.runtime_minutes = parse_runtime(ep.get('runtime')) or metadata.runtime_minutes
                    metadata.provider_id = ep.get('id', metadata.provider_id)
            artwork = await self._show_artwork(raw['id'], raw)
        else:
            artwork = TmdbClient.artwork_from_details(raw)
            if not artwork.primary_artwork_url and metadata.external_id:
                found = await self.artwork_for_external_id(metadata.external_id)
                artwork = ArtworkUrls(found.primary_artwork_url, artwork.secondary_artwork_url or found.secondary_artwork_url)
        return ResolvedMetadata(metadata=metadata, source=MetadataSource.TMDB, artwork=artwork)

    async def _resolve_omdb(self, title: str, year: Optional[int], kind: MediaKind,
                            season: Optional[int], episode: Optional[int]) -> Optional[ResolvedMetadata]:
        if self.omdb is None:
            return None
        if kind == MediaKind.EPISODE and season is not None and episode is not None:
            raw = await self.omdb.episode(title, season, episode)
        else:
            raw = await self.omdb.search(title, year, kind)
        if not raw:
            return None
        metadata = self.omdb.to_metadata(raw)
        if metadata is None:
            return None
        if kind == MediaKind.EPISODE and season is not None and episode is not None:
            metadata.episode_title = metadata.title
            metadata.title = title

        artwork = ArtworkUrls()
        if metadata.external_id:
            artwork = await self.artwork_for_external_id(metadata.external_id)
        if not artwork.primary_artwork_url and clean_value(raw.get('Poster')):
            artwork = ArtworkUrls(clean_value(raw.get('Poster')), artwork.secondary_artwork_url)
        return ResolvedMetadata(metadata=metadata, source=MetadataSource.OMDB, artwork=artwork)

    async def resolve(self, title: Optional[str], year: Optional[int] = None, kind: MediaKind = MediaKind.MOVIE,
                      season: Optional[int] = None, episode: Optional[int] = None) -> Optional[ResolvedMetadata]:
        if not title or not self.has_providers:
            return None
        cache_key = self._cache_key(kind, title, year, season, episode)
        cached = await self._get_cache(cache_key)
        if cached is not None:
            return cached

        resolved: Optional[ResolvedMetadata] = None
        for provider_name, step in (("TMDB", self._resolve_tmdb), ("OMDb", self._resolve_omdb)):
            try:
                resolved = await step(title, year, kind, season, episode)
            except MetadataError as e:
                log.warning(f"{provider_name} lookup failed for '{title}' ({year}): {e}")
                resolved = None
            if resolved is not None:
                log.debug(f"Resolved '{title}' ({year}) via {provider_name}: '{resolved.metadata.title}'")
                break

        if resolved is None:
            log.info(f"No metadata match for '{title}' ({year}, {kind}).")
            return None
        await self._set_cache(cache_key, resolved)
        return resolved

    async def resolve_file(self, record: MediaFile) -> Optional[ResolvedMetadata]:
        if record.media_kind == MediaKind.EPISODE and record.series_title:
            return await self.resolve(record.series_title, record.guessed_year, MediaKind.EPISODE,
                                      record.season_number, record.episode_number)
        return await self.resolve(record.guessed_title, record.guessed_year, record.media_kind)
