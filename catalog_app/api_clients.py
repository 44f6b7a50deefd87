# catalog_app/api_clients.py

import asyncio
import functools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from requests import exceptions as req_exceptions
from tenacity import AsyncRetrying, stop_after_attempt, wait_fixed, retry_if_exception
from thefuzz import process as fuzz_process

from .enums import MediaKind
from .exceptions import ProviderError, RateLimitError
from .models import ArtworkUrls, CastMember, CrewMember, NormalizedMetadata
from .utils import clean_value, format_rating, parse_runtime, parse_year, split_list

log = logging.getLogger(__name__)

TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p"
OMDB_BASE_URL = "https://www.omdbapi.com/"
CREW_JOBS = ("Director", "Screenplay", "Writer", "Producer")

# Global client instances
_tmdb_client: Optional["TmdbClient"] = None
_omdb_client: Optional["OmdbClient"] = None
_clients_initialized = False


def should_retry_provider_error(exception: BaseException) -> bool:
    if isinstance(exception, RateLimitError):
        log.warning(f"Retry check PASSED for HTTP 429 (Rate Limit): {exception}")
        return True
    log.debug(f"Retry check FAILED for: {type(exception).__name__}: {exception}")
    return False


class ProviderLane:
    """Single-owner request lane for one provider.

    Requests are handed in through ``schedule`` and run one at a time, spaced at
    least ``delay`` seconds apart. An HTTP 429 holds the lane for ``backoff``
    seconds and the request is retried exactly once; any other failure leaves the
    lane immediately.
    """

    def __init__(self, name: str, delay: float, backoff: float = 2.0):
        self.name = name
        self.delay = max(0.0, float(delay))
        self.backoff = max(0.0, float(backoff))
        self.last_call = 0.0
        self._lock = asyncio.Lock()

    async def _pace(self):
        if self.delay <= 0:
            return
        since_last = time.monotonic() - self.last_call
        if since_last < self.delay:
            wait_time = self.delay - since_last
            log.debug(f"Rate limiting [{self.name}]: sleeping for {wait_time:.2f}s")
            await asyncio.sleep(wait_time)

    async def _paced_call(self, request: Callable[[], Any]) -> Any:
        await self._pace()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, request)
        finally:
            self.last_call = time.monotonic()

    async def schedule(self, request: Callable[[], Any]) -> Any:
        async_retryer = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.backoff),
            retry=retry_if_exception(should_retry_provider_error),
            reraise=True,
        )
        async with self._lock:
            return await async_retryer(self._paced_call, request)


def find_best_match(title_to_find: str, results: List[Dict[str, Any]], result_key: str = 'title', id_key: str = 'id', score_cutoff: int = 70) -> Optional[Tuple[Dict[str, Any], Optional[float]]]:
    if not results:
        return None
    first_result = results[0]
    choices = {r.get(id_key): str(r.get(result_key)) for r in results if r.get(id_key) is not None and r.get(result_key)}
    if not choices:
        log.debug("No valid choices built for fuzzy matching. Returning first result.")
        return first_result, None

    best_result_list = fuzz_process.extractBests(str(title_to_find), choices, score_cutoff=score_cutoff, limit=1)
    if not best_result_list:
        log.debug(f"Fuzzy match failed for '{title_to_find}' (cutoff {score_cutoff}).")
        return None
    matched_value, score_val, best_id = best_result_list[0]
    log.debug(f"Fuzzy match '{title_to_find}': Found '{matched_value}' (ID:{best_id}) score {float(score_val):.1f}")
    best = next((r for r in results if r.get(id_key) == best_id), first_result)
    return best, float(score_val)


def tmdb_image_url(path: Optional[str], size: str) -> Optional[str]:
    if not path:
        return None
    return f"{TMDB_IMAGE_BASE_URL}/{size}{path}"


class BaseProviderClient:
    name = "provider"
    base_url = ""

    def __init__(self, api_key: str, lane: ProviderLane, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.lane = lane
        self.timeout = timeout
        self.session = session or requests.Session()

    def _auth_params(self) -> Dict[str, Any]:
        return {}

    def _get_json(self, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Blocking GET. Returns parsed JSON, or None for a 404."""
        url = f"{self.base_url}{path}"
        query = {k: v for k, v in {**self._auth_params(), **params}.items() if v is not None}
        try:
            response = self.session.get(url, params=query, timeout=self.timeout)
        except (req_exceptions.ConnectionError, req_exceptions.Timeout) as e:
            raise ProviderError(f"{self.name}: network error for {path}: {e}") from e
        except req_exceptions.RequestException as e:
            raise ProviderError(f"{self.name}: request failed for {path}: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(f"{self.name}: rate limited on {path}", status_code=429)
        if response.status_code == 404:
            log.debug(f"{self.name}: 404 for {path}")
            return None
        if response.status_code == 401:
            raise ProviderError(f"{self.name}: unauthorized (check API key)", status_code=401)
        if response.status_code != 200:
            raise ProviderError(f"{self.name}: HTTP {response.status_code} for {path}", status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name}: malformed JSON for {path}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name}: unexpected payload type {type(data).__name__} for {path}")
        return data

    async def _request(self, path: str, **params: Any) -> Optional[Dict[str, Any]]:
        return await self.lane.schedule(functools.partial(self._get_json, path, params))


class TmdbClient(BaseProviderClient):
    name = "tmdb"
    base_url = TMDB_BASE_URL

    def __init__(self, api_key: str, lane: ProviderLane, timeout: float = 15.0, language: str = "en-US",
                 year_tolerance: int = 1, fuzzy_cutoff: int = 70, cast_limit: int = 10, crew_limit: int = 5,
                 session: Optional[requests.Session] = None):
        super().__init__(api_key, lane, timeout, session)
        self.language = language
        self.year_tolerance = year_tolerance
        self.fuzzy_cutoff = fuzzy_cutoff
        self.cast_limit = cast_limit
        self.crew_limit = crew_limit

    def _auth_params(self) -> Dict[str, Any]:
        return {"api_key": self.api_key, "language": self.language}

    async def search(self, title: str, year: Optional[int] = None, kind: MediaKind = MediaKind.MOVIE) -> Optional[Dict[str, Any]]:
        is_tv = kind == MediaKind.EPISODE
        path = "/search/tv" if is_tv else "/search/movie"
        year_param = {"first_air_date_year": year} if is_tv else {"year": year}
        data = await self._request(path, query=title, **year_param)
        results = [r for r in (data or {}).get("results") or [] if isinstance(r, dict)]
        if not results:
            log.debug(f"TMDB search '{title}' ({year}) returned no results.")
            return None

        result_key = "name" if is_tv else "title"
        date_key = "first_air_date" if is_tv else "release_date"
        if year is not None:
            in_range = [r for r in results if parse_year(r.get(date_key)) is None or abs(parse_year(r.get(date_key)) - year) <= self.year_tolerance]
            if not in_range:
                log.debug(f"TMDB search '{title}': no result within {self.year_tolerance} year(s) of {year}.")
                return None
            results = in_range
        match = find_best_match(title, results, result_key=result_key, score_cutoff=self.fuzzy_cutoff)
        return match[0] if match else None

    async def fetch_details_raw(self, candidate_id: int, kind: MediaKind = MediaKind.MOVIE) -> Optional[Dict[str, Any]]:
        path = f"/tv/{candidate_id}" if kind == MediaKind.EPISODE else f"/movie/{candidate_id}"
        return await self._request(path, append_to_response="credits,external_ids")

    async def details(self, candidate_id: int, kind: MediaKind = MediaKind.MOVIE) -> Optional[NormalizedMetadata]:
        raw = await self.fetch_details_raw(candidate_id, kind)
        return self.to_metadata(raw, kind) if raw else None

    async def episode(self, show_id: int, season: int, episode: int) -> Optional[Dict[str, Any]]:
        return await self._request(f"/tv/{show_id}/season/{season}/episode/{episode}")

    async def find_by_external_id(self, external_id: str) -> Tuple[Optional[MediaKind], Optional[int]]:
        """IMDb id -> (kind, TMDB id). Episode hits resolve to their show."""
        data = await self._request(f"/find/{external_id}", external_source="imdb_id") or {}
        movie_results = data.get("movie_results") or []
        if movie_results:
            return MediaKind.MOVIE, movie_results[0].get("id")
        tv_results = data.get("tv_results") or []
        if tv_results:
            return MediaKind.EPISODE, tv_results[0].get("id")
        episode_results = data.get("tv_episode_results") or []
        if episode_results and episode_results[0].get("show_id"):
            return MediaKind.EPISODE, episode_results[0].get("show_id")
        return None, None

    async def images(self, tmdb_id: int, kind: MediaKind = MediaKind.MOVIE) -> ArtworkUrls:
        path = f"/tv/{tmdb_id}/images" if kind == MediaKind.EPISODE else f"/movie/{tmdb_id}/images"
        data = await self._request(path, include_image_language="en,null", language=None) or {}
        posters = data.get("posters") or []
        backdrops = data.get("backdrops") or []
        return ArtworkUrls(
            primary_artwork_url=tmdb_image_url(posters[0].get("file_path") if posters else None, "w500"),
            secondary_artwork_url=tmdb_image_url(backdrops[0].get("file_path") if backdrops else None, "w1280"),
        )

    @staticmethod
    def artwork_from_details(raw: Dict[str, Any]) -> ArtworkUrls:
        return ArtworkUrls(
            primary_artwork_url=tmdb_image_url(raw.get("poster_path"), "w500"),
            secondary_artwork_url=tmdb_image_url(raw.get("backdrop_path"), "w1280"),
        )

    def to_metadata(self, raw: Dict[str, Any], kind: MediaKind = MediaKind.MOVIE) -> Optional[NormalizedMetadata]:
        is_tv = kind == MediaKind.EPISODE
        title = clean_value(raw.get("name") if is_tv else raw.get("title"))
        if not title:
            return None
        runtime = raw.get("runtime")
        if not runtime and raw.get("episode_run_time"):
            runtime = raw["episode_run_time"][0]
        external_ids = raw.get("external_ids") or {}
        credits = raw.get("credits") or {}

        cast = [
            CastMember(name=c.get("name"), character=clean_value(c.get("character")),
                       profile_url=tmdb_image_url(c.get("profile_path"), "w185"), provider_id=c.get("id"))
            for c in (credits.get("cast") or []) if c.get("name")
        ][:self.cast_limit]
        crew = [
            CrewMember(name=c.get("name"), job=c.get("job"), department=c.get("department"),
                       profile_url=tmdb_image_url(c.get("profile_path"), "w185"), provider_id=c.get("id"))
            for c in (credits.get("crew") or []) if c.get("name") and c.get("job") in CREW_JOBS
        ][:self.crew_limit]

        return NormalizedMetadata(
            title=title,
            year=parse_year(raw.get("first_air_date") if is_tv else raw.get("release_date")),
            plot=clean_value(raw.get("overview")),
            genres=[g.get("name") for g in raw.get("genres") or [] if g.get("name")],
            runtime_minutes=parse_runtime(runtime),
            external_id=clean_value(raw.get("imdb_id") or external_ids.get("imdb_id")),
            provider_id=raw.get("id"),
            show_id=raw.get("id") if is_tv else None,
            rating=format_rating(raw.get("vote_average")),
            cast=cast,
            crew=crew,
        )


class OmdbClient(BaseProviderClient):
    name = "omdb"
    base_url = OMDB_BASE_URL

    def __init__(self, api_key: str, lane: ProviderLane, timeout: float = 15.0, cast_limit: int = 10, crew_limit: int = 5,
                 session: Optional[requests.Session] = None):
        super().__init__(api_key, lane, timeout, session)
        self.cast_limit = cast_limit
        self.crew_limit = crew_limit

    def _auth_params(self) -> Dict[str, Any]:
        return {"apikey": self.api_key}

    async def _lookup(self, **params: Any) -> Optional[Dict[str, Any]]:
        data = await self._request("", **params)
        if not data or str(data.get("Response", "True")).lower() == "false":
            log.debug(f"OMDb: no match for {params} ({(data or {}).get('Error')})")
            return None
        return data

    async def search(self, title: str, year: Optional[int] = None, kind: MediaKind = MediaKind.MOVIE) -> Optional[Dict[str, Any]]:
        omdb_type = "series" if kind == MediaKind.EPISODE else "movie"
        return await self._lookup(t=title, y=year, type=omdb_type, plot="full")

    async def details(self, candidate_id: str, kind: MediaKind = MediaKind.MOVIE) -> Optional[NormalizedMetadata]:
        raw = await self._lookup(i=candidate_id, plot="full")
        return self.to_metadata(raw) if raw else None

    async def episode(self, series_title: str, season: int, episode: int) -> Optional[Dict[str, Any]]:
        return await self._lookup(t=series_title, Season=season, Episode=episode, plot="full")

    def to_metadata(self, raw: Dict[str, Any]) -> Optional[NormalizedMetadata]:
        title = clean_value(raw.get("Title"))
        if not title:
            return None
        crew: List[CrewMember] = []
        for field_name, job in (("Director", "Director"), ("Writer", "Writer")):
            for person in split_list(raw.get(field_name)):
                name = person.split(" (")[0].strip()
                if name and not any(c.name == name and c.job == job for c in crew):
                    crew.append(CrewMember(name=name, job=job))
        return NormalizedMetadata(
            title=title,
            year=parse_year(raw.get("Year")),
            plot=clean_value(raw.get("Plot")),
            genres=split_list(raw.get("Genre")),
            runtime_minutes=parse_runtime(raw.get("Runtime")),
            external_id=clean_value(raw.get("imdbID")),
            rating=format_rating(raw.get("imdbRating")),
            cast=[CastMember(name=n) for n in split_list(raw.get("Actors"))][:self.cast_limit],
            crew=crew[:self.crew_limit],
        )


def initialize_api_clients(cfg_helper, fallback_keys: Optional[Dict[str, Optional[str]]] = None,
                           session: Optional[requests.Session] = None) -> bool:
    """Initializes provider clients from config and keys. Each client gets its own lane.

    ``fallback_keys`` (e.g. keys saved in the library settings table) are used only
    when the environment does not provide a key for that service.
    """
    global _tmdb_client, _omdb_client, _clients_initialized
    if _clients_initialized:
        log.debug("API clients already initialized.")
        return _tmdb_client is not None or _omdb_client is not None

    fallback_keys = fallback_keys or {}
    tmdb_key = cfg_helper.get_api_key('tmdb') or fallback_keys.get('tmdb')
    omdb_key = cfg_helper.get_api_key('omdb') or fallback_keys.get('omdb')
    delay = float(cfg_helper('api_rate_limit_delay', 0.35))
    backoff = float(cfg_helper('api_rate_limit_backoff', 2.0))
    timeout = float(cfg_helper('api_timeout_seconds', 15.0))
    cast_limit = int(cfg_helper('cast_limit', 10))
    crew_limit = int(cfg_helper('crew_limit', 5))

    if tmdb_key:
        language = cfg_helper('tmdb_language', 'en-US') or 'en-US'
        _tmdb_client = TmdbClient(
            tmdb_key, ProviderLane("tmdb", delay, backoff), timeout=timeout, language=language,
            year_tolerance=int(cfg_helper('api_year_tolerance', 1)),
            fuzzy_cutoff=int(cfg_helper('tmdb_match_fuzzy_cutoff', 70)),
            cast_limit=cast_limit, crew_limit=crew_limit, session=session,
        )
        log.info(f"TMDB API Client initialized (Lang: {language}).")
    else:
        log.debug("TMDB API Key not found.")

    if omdb_key:
        _omdb_client = OmdbClient(omdb_key, ProviderLane("omdb", delay, backoff), timeout=timeout,
                                  cast_limit=cast_limit, crew_limit=crew_limit, session=session)
        log.info("OMDb API Client initialized.")
    else:
        log.debug("OMDb API Key not found.")

    _clients_initialized = True
    keys_loaded = _tmdb_client is not None or _omdb_client is not None
    if not keys_loaded:
        log.warning("No API keys loaded; metadata enrichment is disabled.")
    return keys_loaded


def reset_api_clients():
    global _tmdb_client, _omdb_client, _clients_initialized
    _tmdb_client = None
    _omdb_client = None
    _clients_initialized = False


def get_tmdb_client() -> Optional[TmdbClient]:
    """Returns the initialized TMDB client instance, or None."""
    if not _clients_initialized:
        log.warning("Attempted to get TMDB client before initialization.")
        return None
    return _tmdb_client


def get_omdb_client() -> Optional[OmdbClient]:
    """Returns the initialized OMDb client instance, or None."""
    if not _clients_initialized:
        log.warning("Attempted to get OMDb client before initialization.")
        return None
    return _omdb_client
