# tests/test_metadata_fetcher.py
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from catalog_app.api_clients import OmdbClient, ProviderLane, TmdbClient
from catalog_app.artwork_cache import ArtworkCache
from catalog_app.enums import MediaKind, MetadataSource
from catalog_app.exceptions import ProviderError
from catalog_app.metadata_fetcher import MetadataResolver
from catalog_app.models import ArtworkUrls

from conftest import StubConfigHelper, make_record


def run(coro):
    return asyncio.run(coro)


MOVIE_RAW = {
    'id': 27205, 'title': 'Inception', 'release_date': '2010-07-15', 'runtime': 148,
    'poster_path': '/poster.jpg', 'backdrop_path': '/backdrop.jpg',
    'external_ids': {'imdb_id': 'tt1375666'}, 'credits': {'cast': [], 'crew': []},
}
SHOW_RAW = {
    'id': 70523, 'name': 'Dark', 'first_air_date': '2017-12-01', 'episode_run_time': [60],
    'poster_path': None, 'backdrop_path': None, 'credits': {},
}


@pytest.fixture
def tmdb(mocker):
    client = TmdbClient("k", ProviderLane("tmdb", 0, 0), session=MagicMock())
    mocker.patch.object(client, 'search', AsyncMock(return_value={'id': 27205}))
    mocker.patch.object(client, 'fetch_details_raw', AsyncMock(return_value=dict(MOVIE_RAW)))
    mocker.patch.object(client, 'episode', AsyncMock(return_value=None))
    mocker.patch.object(client, 'find_by_external_id', AsyncMock(return_value=(MediaKind.MOVIE, 27205)))
    mocker.patch.object(client, 'images', AsyncMock(return_value=ArtworkUrls("https://img/poster.jpg", "https://img/backdrop.jpg")))
    return client


@pytest.fixture
def omdb(mocker):
    client = OmdbClient("k", ProviderLane("omdb", 0, 0), session=MagicMock())
    mocker.patch.object(client, 'search', AsyncMock(return_value={
        'Title': 'Inception', 'Year': '2010', 'Runtime': '148 min', 'imdbID': 'tt1375666',
        'Poster': 'https://omdb/poster.jpg', 'Response': 'True'}))
    mocker.patch.object(client, 'episode', AsyncMock(return_value={
        'Title': 'Secrets', 'Year': '2017', 'imdbID': 'tt5990096', 'Poster': 'N/A', 'Response': 'True'}))
    return client


@pytest.fixture
def cfg():
    return StubConfigHelper({'cache_enabled': False})


def test_tmdb_movie_resolution(cfg, tmdb, omdb):
    resolver = MetadataResolver(cfg, tmdb=tmdb, omdb=omdb)
    resolved = run(resolver.resolve("Inception", 2010))
    assert resolved.source == MetadataSource.TMDB
    assert resolved.metadata.title == "Inception"
    assert resolved.metadata.external_id == "tt1375666"
    assert resolved.artwork.primary_artwork_url == "https://image.tmdb.org/t/p/w500/poster.jpg"
    assert resolved.artwork.secondary_artwork_url == "https://image.tmdb.org/t/p/w1280/backdrop.jpg"
    omdb.search.assert_not_called()


def test_falls_back_to_omdb_when_tmdb_has_no_match(cfg, tmdb, omdb):
    tmdb.search.return_value = None
    resolver = MetadataResolver(cfg, tmdb=tmdb, omdb=omdb)
    resolved = run(resolver.resolve("Inception", 2010))
    assert resolved.source == MetadataSource.OMDB
    assert resolved.metadata.runtime_minutes == 148
    # artwork comes from TMDB via the IMDb id
    tmdb.find_by_external_id.assert_awaited_once_with("tt1375666")
    assert resolved.artwork.primary_artwork_url == "https://img/poster.jpg"


def test_provider_error_moves_on_to_next_provider(cfg, tmdb, omdb):
    tmdb.search.side_effect = ProviderError("HTTP 500", 500)
    tmdb.find_by_external_id.side_effect = ProviderError("HTTP 500", 500)
    resolver = MetadataResolver(cfg, tmdb=tmdb, omdb=omdb)
    resolved = run(resolver.resolve("Inception", 2010))
    assert resolved.source == MetadataSource.OMDB
    assert resolved.artwork.primary_artwork_url == "https://omdb/poster.jpg"


def test_all_providers_failing_is_no_match(cfg, tmdb, omdb):
    tmdb.search.side_effect = ProviderError("down")
    omdb.search.side_effect = ProviderError("down")
    resolver = MetadataResolver(cfg, tmdb=tmdb, omdb=omdb)
    assert run(resolver.resolve("Inception", 2010)) is None


def test_no_title_or_no_providers_short_circuits(cfg, tmdb):
    assert run(MetadataResolver(cfg, tmdb=tmdb).resolve(None)) is None
    empty = MetadataResolver(cfg)
    assert empty.has_providers is False
    assert run(empty.resolve("Inception")) is None


def test_episode_uses_episode_data_and_cached_show_artwork(cfg, tmdb):
    tmdb.fetch_details_raw.return_value = dict(SHOW_RAW)
    tmdb.search.return_value = {'id': 70523}
    tmdb.episode.return_value = {'id': 1, 'name': 'Secrets', 'overview': 'Jonas.', 'runtime': 51}
    cache = ArtworkCache()
    resolver = MetadataResolver(cfg, tmdb=tmdb, artwork_cache=cache)

    first = run(resolver.resolve("Dark", None, MediaKind.EPISODE, 1, 1))
    second = run(resolver.resolve("Dark", None, MediaKind.EPISODE, 1, 2))

    assert first.metadata.title == "Dark"
    assert first.metadata.episode_title == "Secrets"
    assert first.metadata.runtime_minutes == 51
    assert first.metadata.show_id == 70523
    assert first.artwork.primary_artwork_url == "https://img/poster.jpg"
    assert second.artwork == first.artwork
    tmdb.images.assert_awaited_once_with(70523, MediaKind.EPISODE)
    assert cache.get_show(70523) is not None


def test_omdb_episode_keeps_series_title(cfg, omdb):
    resolver = MetadataResolver(cfg, omdb=omdb)
    resolved = run(resolver.resolve("Dark", None, MediaKind.EPISODE, 1, 1))
    assert resolved.metadata.title == "Dark"
    assert resolved.metadata.episode_title == "Secrets"
    assert resolved.artwork.primary_artwork_url is None
    omdb.episode.assert_awaited_once_with("Dark", 1, 1)


def test_artwork_lookup_is_cached_per_external_id(cfg, tmdb):
    resolver = MetadataResolver(cfg, tmdb=tmdb)
    run(resolver.artwork_for_external_id("tt1375666"))
    run(resolver.artwork_for_external_id("tt1375666"))
    tmdb.find_by_external_id.assert_awaited_once()


def test_failed_artwork_lookup_is_not_cached(cfg, tmdb):
    tmdb.find_by_external_id.side_effect = ProviderError("timeout")
    cache = ArtworkCache()
    resolver = MetadataResolver(cfg, tmdb=tmdb, artwork_cache=cache)
    assert run(resolver.artwork_for_external_id("tt1")).is_empty()
    assert cache.get("tt1") is None


def test_resolve_file_uses_series_fields_for_episodes(cfg, tmdb):
    resolver = MetadataResolver(cfg, tmdb=tmdb)
    resolver.resolve = AsyncMock(return_value=None)
    episode = make_record("/tv/Dark.S01E02.mkv", media_kind=MediaKind.EPISODE, series_title="Dark",
                          guessed_title="Dark", season_number=1, episode_number=2)
    run(resolver.resolve_file(episode))
    resolver.resolve.assert_awaited_once_with("Dark", None, MediaKind.EPISODE, 1, 2)


def test_disk_cache_serves_repeat_lookups(tmp_path, tmdb):
    cfg = StubConfigHelper({'cache_enabled': True, 'cache_directory': str(tmp_path / "cache")})
    resolver = MetadataResolver(cfg, tmdb=tmdb)
    try:
        first = run(resolver.resolve("Inception", 2010))
        second = run(resolver.resolve("inception ", 2010))
    finally:
        resolver.close()
    assert second.metadata.title == first.metadata.title
    assert second.source == MetadataSource.TMDB
    assert second.artwork == first.artwork
    tmdb.search.assert_awaited_once()
