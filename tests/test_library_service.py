# tests/test_library_service.py
import asyncio
import pytest

from catalog_app.enums import MetadataSource, ScanJobStatus
from catalog_app.enrichment_queue import EnrichmentQueue
from catalog_app.exceptions import FolderNotFoundError, ScanError
from catalog_app.library_service import LibraryService, ScanJobRegistry, TMDB_KEY_SETTING
from catalog_app.models import NormalizedMetadata, ScanOutcome
from catalog_app.reconciler import ReconciliationEngine

from conftest import FakeResolver, StubConfigHelper, make_resolved, make_video


def run(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def service(store, cfg):
    resolver = FakeResolver({"Inception": make_resolved("Inception", 2010)})
    engine = ReconciliationEngine(store, StubConfigHelper({'inline_metadata': False}), resolver)
    queue = EnrichmentQueue(store, resolver, delay=0)
    return LibraryService(store, engine, queue, resolver=resolver)


# --- ScanJobRegistry ---

def test_registry_expires_finished_jobs_after_ttl():
    clock = FakeClock()
    registry = ScanJobRegistry(max_entries=10, ttl_seconds=60, clock=clock)
    job = registry.create("folder")
    registry.finish(job.id, outcome=ScanOutcome(new=1))
    assert registry.get(job.id).status == ScanJobStatus.COMPLETED

    clock.now = 59
    assert registry.get(job.id) is not None
    clock.now = 61
    assert registry.get(job.id) is None


def test_registry_never_evicts_running_jobs():
    clock = FakeClock()
    registry = ScanJobRegistry(max_entries=2, ttl_seconds=1, clock=clock)
    running = [registry.create(f"f{i}") for i in range(3)]
    clock.now = 1000
    assert len(registry.list_jobs()) == 3
    assert all(registry.get(j.id) is not None for j in running)


def test_registry_drops_oldest_finished_first_when_full():
    registry = ScanJobRegistry(max_entries=2, ttl_seconds=3600, clock=FakeClock())
    first = registry.create("a")
    registry.finish(first.id, outcome=ScanOutcome())
    second = registry.create("b")
    registry.finish(second.id, error="boom")
    third = registry.create("c")

    assert registry.get(first.id) is None
    assert registry.get(second.id).status == ScanJobStatus.ERROR
    assert registry.get(second.id).error_message == "boom"
    assert registry.get(third.id).status == ScanJobStatus.RUNNING
    assert len(registry) == 2


# --- LibraryService ---

def test_add_folder_rejects_non_directory(service, tmp_path):
    with pytest.raises(ScanError):
        run(service.add_folder(tmp_path / "nope"))


def test_rescan_unknown_folder_raises(service):
    with pytest.raises(FolderNotFoundError):
        run(service.rescan_folder("missing"))


def test_rescan_enqueues_incomplete_without_starting(service, tmp_path):
    make_video(tmp_path / "movies" / "Inception.2010.mkv", 250)
    make_video(tmp_path / "movies" / "Nothing.Known.2011.mkv", 250)

    async def scenario():
        folder = await service.add_folder(tmp_path / "movies")
        outcome = await service.rescan_folder(folder.id)
        pending = service.queue.pending_count
        service.queue.start()
        await service.queue.wait_idle()
        return outcome, pending

    outcome, pending = run(scenario())
    assert outcome.new == 2
    assert pending == 2
    stats = service.queue.get_stats()
    assert (stats.succeeded, stats.failed) == (1, 1)
    inception = service.store.find_file_by_path(str((tmp_path / "movies" / "Inception.2010.mkv").resolve()))
    assert inception.metadata_source == MetadataSource.TMDB


def test_rescan_all_covers_every_folder(service, tmp_path):
    make_video(tmp_path / "a" / "One.2001.mkv", 250)
    make_video(tmp_path / "b" / "Two.2002.mkv", 250)

    async def scenario():
        await service.add_folder(tmp_path / "a")
        await service.add_folder(tmp_path / "b")
        return await service.rescan_all()

    results = run(scenario())
    assert sorted(o.new for o in results.values()) == [1, 1]


def test_scan_job_runs_in_background(service, tmp_path):
    make_video(tmp_path / "movies" / "Inception.2010.mkv", 250)

    async def scenario():
        folder = await service.add_folder(tmp_path / "movies")
        job = service.start_scan_job(folder.id)
        assert job.status == ScanJobStatus.RUNNING
        await service.wait_for_jobs()
        return service.get_scan_job(job.id)

    job = run(scenario())
    assert job.status == ScanJobStatus.COMPLETED
    assert job.files_seen == 1
    assert job.outcome.new == 1
    assert job.finished_at is not None


def test_scan_job_records_failure(service):
    async def scenario():
        job = service.start_scan_job("missing")
        await service.wait_for_jobs()
        return service.get_scan_job(job.id)

    job = run(scenario())
    assert job.status == ScanJobStatus.ERROR
    assert "missing" in job.error_message


def test_user_actions_and_reports(service, tmp_path):
    make_video(tmp_path / "a" / "Same.Movie.mkv", 250)
    make_video(tmp_path / "b" / "same movie.mkv", 250)

    async def scenario():
        a = await service.add_folder(tmp_path / "a")
        b = await service.add_folder(tmp_path / "b")
        await service.rescan_folder(a.id)
        await service.rescan_folder(b.id)
        files = await service.list_files()
        target = files[0]
        assert await service.set_manual_metadata(target.id, NormalizedMetadata(title="Kept"))
        assert await service.toggle_favorite(target.id) is True
        assert await service.hide_file(target.id)
        visible = await service.list_files()
        everything = await service.list_files(include_hidden=True)
        duplicates = await service.find_duplicates()
        found = await service.search("kept")
        removed = await service.remove_file(files[1].id)
        remaining = await service.list_files(include_hidden=True)
        return visible, everything, duplicates, found, removed, remaining

    visible, everything, duplicates, found, removed, remaining = run(scenario())
    assert len(visible) == 1
    assert len(everything) == 2
    assert len(duplicates) == 1 and len(duplicates[0].files) == 2
    assert found == []
    assert removed is True
    assert len(remaining) == 1


def test_enqueue_incomplete_and_reset(service, tmp_path):
    make_video(tmp_path / "movies" / "Inception.2010.mkv", 250)

    async def scenario():
        folder = await service.add_folder(tmp_path / "movies")
        await service.rescan_folder(folder.id)
        service.queue.clear()
        added = await service.enqueue_incomplete()
        await service.reset_library()
        return added, await service.list_folders(), await service.list_files(include_hidden=True)

    added, folders, files = run(scenario())
    assert added == 1
    assert folders == []
    assert files == []
    assert service.queue.pending_count == 0


def test_from_config_uses_stored_tmdb_key(mocker, tmp_path):
    cfg = StubConfigHelper({'library_db_path': str(tmp_path / "lib.db")})
    from catalog_app.library_store import LibraryStore
    LibraryStore(tmp_path / "lib.db").set_setting(TMDB_KEY_SETTING, "stored-key")
    init = mocker.patch('catalog_app.library_service.initialize_api_clients', return_value=True)
    mocker.patch('catalog_app.library_service.MetadataResolver', return_value=FakeResolver())

    service = LibraryService.from_config(cfg)

    assert init.call_args.kwargs['fallback_keys'] == {'tmdb': 'stored-key', 'omdb': None}
    assert service.queue is not None
    assert service.store.db_path == (tmp_path / "lib.db").resolve()


def test_from_config_without_metadata_has_no_queue(tmp_path):
    cfg = StubConfigHelper({'library_db_path': str(tmp_path / "lib.db"), 'use_metadata': False})
    service = LibraryService.from_config(cfg)
    assert service.queue is None
    assert service.resolver is None
    assert run(service.enqueue_incomplete()) == 0
