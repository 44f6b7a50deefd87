# tests/conftest.py
import pytest
from pathlib import Path
import sys
import argparse

# Ensure the app package is findable by pytest by adding the project root to the path
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

from catalog_app import api_clients
from catalog_app.enums import MediaKind, MetadataSource
from catalog_app.library_store import LibraryStore, new_id
from catalog_app.models import ArtworkUrls, MediaFile, NormalizedMetadata, ResolvedMetadata

MB = 1024 * 1024

DEFAULT_TEST_SETTINGS = {
    'video_extensions': ['.mkv', '.mp4', '.avi'],
    'min_file_size_mb': 200,
    'ignore_dirs': [],
    'ignore_patterns': ['.*', '*[sS]ample*'],
    'use_metadata': True,
    'inline_metadata': True,
    'detect_relocations': True,
    'api_rate_limit_delay': 0.0,
    'api_rate_limit_backoff': 0.0,
    'cache_enabled': False,
    'enrichment_concurrency': 2,
    'enrichment_delay': 0.0,
}


class StubConfigHelper:
    """Dict-backed stand-in for ConfigHelper with the same call surface."""
    def __init__(self, values=None, api_keys=None):
        self.values = dict(DEFAULT_TEST_SETTINGS)
        self.values.update(values or {})
        self.api_keys = dict(api_keys or {})
        self.args = argparse.Namespace(profile='default')
        self.profile = 'default'

    def __call__(self, key, default_value=None, arg_value=None):
        if arg_value is not None:
            return arg_value
        return self.values.get(key, default_value)

    def get_api_key(self, service_name):
        return self.api_keys.get(service_name)

    def get_list(self, key, default_value=None):
        val = self(key, default_value)
        if isinstance(val, str): return [i.strip() for i in val.split(',') if i.strip()]
        if isinstance(val, list): return val
        return default_value if isinstance(default_value, list) else []


class FakeResolver:
    """Resolver double: answers from a title -> ResolvedMetadata map and records every call."""
    def __init__(self, answers=None, fail_titles=()):
        self.answers = dict(answers or {})
        self.fail_titles = set(fail_titles)
        self.calls = []
        self.has_providers = True

    async def resolve_file(self, record):
        title = record.series_title if record.media_kind == MediaKind.EPISODE and record.series_title else record.guessed_title
        self.calls.append(title)
        if title in self.fail_titles:
            from catalog_app.exceptions import ProviderError
            raise ProviderError(f"boom for {title}")
        return self.answers.get(title)

    def close(self):
        pass


def make_resolved(title, year=None, poster="https://image.tmdb.org/t/p/w500/poster.jpg", source=MetadataSource.TMDB):
    return ResolvedMetadata(
        metadata=NormalizedMetadata(title=title, year=year, external_id="tt1375666"),
        source=source,
        artwork=ArtworkUrls(primary_artwork_url=poster, secondary_artwork_url=None),
    )


def make_video(path: Path, size_mb: int = 250) -> Path:
    """Creates a sparse file of the given size so the size floor can be exercised cheaply."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.truncate(size_mb * MB)
    return path


def make_record(full_path, folder_id=None, size=250 * MB, **overrides):
    values = dict(id=new_id(), full_path=str(full_path), file_name=Path(full_path).name, folder_id=folder_id,
                  extension=Path(full_path).suffix, file_size_bytes=size)
    values.update(overrides)
    return MediaFile(**values)


@pytest.fixture
def cfg():
    return StubConfigHelper()


@pytest.fixture
def store(tmp_path):
    return LibraryStore(tmp_path / "db" / "library.db")


@pytest.fixture
def fake_resolver():
    return FakeResolver()


@pytest.fixture(autouse=True)
def reset_api_clients_state():
    """Fixture to automatically reset the global client registry before each test."""
    api_clients.reset_api_clients()
    yield
    api_clients.reset_api_clients()
