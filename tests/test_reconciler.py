# tests/test_reconciler.py
import asyncio
import pytest
from pathlib import Path

from catalog_app.enums import MetadataSource, ScanEventKind
from catalog_app.exceptions import PersistenceError, ScanError
from catalog_app.models import NormalizedMetadata
from catalog_app.reconciler import ReconciliationEngine

from conftest import MB, FakeResolver, StubConfigHelper, make_record, make_resolved, make_video


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def movies(store, tmp_path):
    return store.add_folder(tmp_path / "movies")


@pytest.fixture
def engine(store, cfg):
    return ReconciliationEngine(store, cfg)


def test_inception_first_scan_skips_small_sample(engine, store, movies):
    make_video(Path(movies.path) / "Inception.2010.1080p.mkv", 250)
    make_video(Path(movies.path) / "sample.mkv", 5)

    outcome = run(engine.reconcile(movies))

    assert outcome.as_counts() == {'new': 1, 'updated': 0, 'removed': 0}
    files = store.list_all_files()
    assert len(files) == 1
    assert files[0].guessed_title == "Inception"
    assert files[0].guessed_year == 2010
    assert files[0].folder_id == movies.id


def test_inception_replaced_by_extended_cut_gets_new_identity(engine, store, movies):
    original = make_video(Path(movies.path) / "Inception.2010.1080p.mkv", 250)
    run(engine.reconcile(movies))
    before = store.list_all_files()[0]

    original.unlink()
    make_video(Path(movies.path) / "Inception.2010.Extended.2160p.mkv", 300)
    outcome = run(engine.reconcile(movies))

    assert outcome.as_counts() == {'new': 1, 'updated': 0, 'removed': 1}
    after = store.list_all_files()
    assert len(after) == 1
    assert after[0].id != before.id
    assert after[0].guessed_title == "Inception"


def test_rescan_is_idempotent(engine, store, movies):
    for name in ("A.2001.mkv", "B.2002.mkv", "C.2003.mp4"):
        make_video(Path(movies.path) / name, 210)
    run(engine.reconcile(movies))
    ids_before = sorted(f.id for f in store.list_all_files())

    outcome = run(engine.reconcile(movies))

    assert outcome.as_counts() == {'new': 0, 'updated': 3, 'removed': 0}
    assert sorted(f.id for f in store.list_all_files()) == ids_before


def test_size_change_is_an_update(engine, store, movies):
    video = make_video(Path(movies.path) / "Movie.2012.mkv", 250)
    run(engine.reconcile(movies))
    file_id = store.list_all_files()[0].id

    make_video(video, 260)
    outcome = run(engine.reconcile(movies))

    assert outcome.as_counts() == {'new': 0, 'updated': 1, 'removed': 0}
    loaded = store.get_file(file_id)
    assert loaded.file_size_bytes == 260 * 1024 * 1024


def test_move_between_folders_keeps_identity_and_metadata(store, tmp_path):
    folder_x = store.add_folder(tmp_path / "folderX")
    folder_y = store.add_folder(tmp_path / "folderY")
    resolver = FakeResolver({"Heat": make_resolved("Heat", 1995)})
    engine = ReconciliationEngine(store, StubConfigHelper(), resolver)

    source = make_video(Path(folder_x.path) / "Heat.1995.mkv", 250)
    run(engine.reconcile(folder_x))
    before = store.list_all_files()[0]
    assert before.metadata.title == "Heat"
    calls_before = len(resolver.calls)

    target = Path(folder_y.path) / "Heat.1995.mkv"
    target.parent.mkdir(parents=True, exist_ok=True)
    source.rename(target)
    events = []
    outcome = run(engine.reconcile(folder_y, events.append))

    assert outcome.as_counts() == {'new': 0, 'updated': 1, 'removed': 0}
    after = store.get_file(before.id)
    assert after.folder_id == folder_y.id
    assert after.full_path == str(target)
    assert after.metadata.title == "Heat"
    assert len(resolver.calls) == calls_before
    assert any(e.kind == ScanEventKind.LOG and "Detected move" in (e.message or "") for e in events)

    # the old folder no longer owns it, and rescanning it removes nothing
    assert run(engine.reconcile(folder_x)).as_counts() == {'new': 0, 'updated': 0, 'removed': 0}
    assert len(store.list_all_files()) == 1


def test_relocation_detection_can_be_disabled(store, tmp_path):
    folder_x = store.add_folder(tmp_path / "x")
    folder_y = store.add_folder(tmp_path / "y")
    engine = ReconciliationEngine(store, StubConfigHelper({'detect_relocations': False}))
    source = make_video(Path(folder_x.path) / "movie.mkv", 250)
    run(engine.reconcile(folder_x))
    old_id = store.list_all_files()[0].id

    target = Path(folder_y.path) / "movie.mkv"
    target.parent.mkdir(parents=True, exist_ok=True)
    source.rename(target)
    assert run(engine.reconcile(folder_y)).new == 1
    assert store.find_file_by_path(str(target)).id != old_id


def test_same_name_and_size_in_other_folder_is_not_merged(engine, store, tmp_path):
    folder_a = store.add_folder(tmp_path / "a")
    folder_b = store.add_folder(tmp_path / "b")
    make_video(Path(folder_a.path) / "movie.mkv", 250)
    make_video(Path(folder_b.path) / "movie.mkv", 250)

    run(engine.reconcile(folder_a))
    outcome = run(engine.reconcile(folder_b))

    assert outcome.new == 1
    assert len({f.id for f in store.list_all_files()}) == 2


def test_deletion_is_folder_scoped(engine, store, tmp_path):
    folder_a = store.add_folder(tmp_path / "a")
    folder_b = store.add_folder(tmp_path / "b")
    doomed = make_video(Path(folder_a.path) / "movie.mkv", 250)
    make_video(Path(folder_b.path) / "movie.mkv", 250)
    run(engine.reconcile(folder_a))
    run(engine.reconcile(folder_b))
    survivor = store.list_files_by_folder(folder_b.id)[0]

    doomed.unlink()
    outcome = run(engine.reconcile(folder_a))

    assert outcome.removed == 1
    assert store.list_files_by_folder(folder_a.id) == []
    assert store.get_file(survivor.id) is not None


def test_manual_record_survives_rescans_untouched(store, movies):
    resolver = FakeResolver({"Movie": make_resolved("Provider Title", 2012)})
    engine = ReconciliationEngine(store, StubConfigHelper(), resolver)
    make_video(Path(movies.path) / "Movie.2012.mkv", 250)
    run(engine.reconcile(movies))
    file_id = store.list_all_files()[0].id
    store.set_manual_metadata(file_id, NormalizedMetadata(title="Director's Cut", year=2012))
    resolver.calls.clear()

    for _ in range(3):
        outcome = run(engine.reconcile(movies))
        assert outcome.incomplete_ids == []

    loaded = store.get_file(file_id)
    assert loaded.metadata_source == MetadataSource.MANUAL
    assert loaded.metadata.title == "Director's Cut"
    assert resolver.calls == []


def test_hidden_record_is_frozen_and_never_removed(engine, store, movies):
    video = make_video(Path(movies.path) / "Movie.2012.mkv", 250)
    run(engine.reconcile(movies))
    record = store.list_all_files()[0]
    store.set_hidden(record.id, True)

    make_video(video, 270)
    outcome = run(engine.reconcile(movies))
    assert outcome.updated == 1
    assert store.get_file(record.id).file_size_bytes == 250 * 1024 * 1024

    video.unlink()
    outcome = run(engine.reconcile(movies))
    assert outcome.removed == 0
    loaded = store.get_file(record.id)
    assert loaded is not None and loaded.is_hidden


def test_favorite_flag_survives_rescan(engine, store, movies):
    make_video(Path(movies.path) / "Movie.2012.mkv", 250)
    run(engine.reconcile(movies))
    file_id = store.list_all_files()[0].id
    store.set_favorite(file_id, True)

    run(engine.reconcile(movies))
    assert store.get_file(file_id).is_favorite is True


def test_inline_metadata_and_incomplete_ids(store, movies):
    resolver = FakeResolver({"Inception": make_resolved("Inception", 2010)}, fail_titles={"Broken"})
    engine = ReconciliationEngine(store, StubConfigHelper(), resolver)
    make_video(Path(movies.path) / "Inception.2010.mkv", 250)
    make_video(Path(movies.path) / "Unknown.Thing.2019.mkv", 250)
    make_video(Path(movies.path) / "Broken.2001.mkv", 250)
    events = []

    outcome = run(engine.reconcile(movies, events.append))

    assert outcome.new == 3
    matched = store.find_file_by_path(str(Path(movies.path) / "Inception.2010.mkv"))
    assert matched.metadata.title == "Inception"
    assert matched.metadata_source == MetadataSource.TMDB
    assert matched.id not in outcome.incomplete_ids
    assert len(outcome.incomplete_ids) == 2
    assert any(e.kind == ScanEventKind.LOG and "Broken" in (e.message or "") for e in events)
    assert not any(e.kind == ScanEventKind.ERROR for e in events)
    assert events[0].kind == ScanEventKind.START
    assert events[-1].kind == ScanEventKind.DONE


def test_incomplete_record_is_backfilled_on_rescan(store, movies):
    resolver = FakeResolver()
    engine = ReconciliationEngine(store, StubConfigHelper(), resolver)
    make_video(Path(movies.path) / "Inception.2010.mkv", 250)
    first = run(engine.reconcile(movies))
    assert len(first.incomplete_ids) == 1

    resolver.answers["Inception"] = make_resolved("Inception", 2010)
    second = run(engine.reconcile(movies))
    assert second.incomplete_ids == []
    assert store.list_all_files()[0].metadata.title == "Inception"


def test_inline_metadata_disabled_leaves_records_incomplete(store, movies):
    resolver = FakeResolver({"Inception": make_resolved("Inception", 2010)})
    engine = ReconciliationEngine(store, StubConfigHelper({'inline_metadata': False}), resolver)
    make_video(Path(movies.path) / "Inception.2010.mkv", 250)

    outcome = run(engine.reconcile(movies))
    assert resolver.calls == []
    assert len(outcome.incomplete_ids) == 1


def test_persistence_failure_rolls_back_whole_pass(engine, store, movies, mocker):
    keep = make_video(Path(movies.path) / "Keep.2001.mkv", 250)
    gone = make_video(Path(movies.path) / "Gone.2002.mkv", 250)
    run(engine.reconcile(movies))
    before = {f.id for f in store.list_all_files()}

    gone.unlink()
    make_video(Path(movies.path) / "New.2003.mkv", 250)
    mocker.patch.object(store, 'delete_files', side_effect=PersistenceError("disk full"))
    events = []

    with pytest.raises(PersistenceError):
        run(engine.reconcile(movies, events.append))

    assert {f.id for f in store.list_all_files()} == before
    assert store.find_file_by_path(str(Path(movies.path) / "New.2003.mkv")) is None
    assert any(e.kind == ScanEventKind.ERROR for e in events)
    assert keep.exists()


def test_missing_folder_root_raises_and_keeps_rows(engine, store, movies):
    make_video(Path(movies.path) / "Movie.2012.mkv", 250)
    run(engine.reconcile(movies))
    for p in Path(movies.path).iterdir():
        p.unlink()
    Path(movies.path).rmdir()
    events = []

    with pytest.raises(ScanError):
        run(engine.reconcile(movies, events.append))
    assert len(store.list_files_by_folder(movies.id)) == 1
    assert events[-1].kind == ScanEventKind.ERROR


def test_concurrent_rescans_of_one_folder_are_serialized(engine, store, movies):
    make_video(Path(movies.path) / "Movie.2012.mkv", 250)

    async def both():
        return await asyncio.gather(engine.reconcile(movies), engine.reconcile(movies))

    first, second = run(both())
    assert sorted([first.new, second.new]) == [0, 1]
    assert len(store.list_all_files()) == 1


def test_copy_on_offline_folder_is_not_taken_over(store, tmp_path):
    backup = store.add_folder(tmp_path / "backup")
    main = store.add_folder(tmp_path / "main")
    engine = ReconciliationEngine(store, StubConfigHelper())
    make_video(Path(backup.path) / "Heat.1995.mkv", 250)
    run(engine.reconcile(backup))
    backup_record = store.list_files_by_folder(backup.id)[0]
    store.set_favorite(backup_record.id, True)

    unmounted = tmp_path / "backup-unmounted"
    Path(backup.path).rename(unmounted)
    make_video(Path(main.path) / "Heat.1995.mkv", 250)
    outcome = run(engine.reconcile(main))

    assert outcome.as_counts() == {'new': 1, 'updated': 0, 'removed': 0}
    main_record = store.list_files_by_folder(main.id)[0]
    assert main_record.id != backup_record.id
    assert main_record.is_favorite is False
    kept = store.get_file(backup_record.id)
    assert kept.folder_id == backup.id and kept.is_favorite is True

    unmounted.rename(backup.path)
    assert run(engine.reconcile(backup)).as_counts() == {'new': 0, 'updated': 1, 'removed': 0}
    assert [r.id for r in store.list_files_by_folder(backup.id)] == [backup_record.id]


@pytest.mark.parametrize("old_dir_exists, expected_new", [(True, 0), (False, 1)])
def test_detached_record_relocates_only_when_its_directory_is_reachable(store, tmp_path, old_dir_exists, expected_new):
    main = store.add_folder(tmp_path / "main")
    engine = ReconciliationEngine(store, StubConfigHelper())
    old_dir = tmp_path / "old"
    if old_dir_exists:
        old_dir.mkdir()
    detached = make_record(old_dir / "Heat.1995.mkv", None, size=250 * MB)
    store.upsert_file(detached)
    make_video(Path(main.path) / "Heat.1995.mkv", 250)

    outcome = run(engine.reconcile(main))

    assert outcome.new == expected_new
    assert (store.get_file(detached.id).folder_id == main.id) is old_dir_exists


def test_scan_warnings_are_informational(engine, store, movies, mocker):
    make_video(Path(movies.path) / "Movie.2012.mkv", 250)

    def scan_with_locked_dir(root, cfg_helper, on_warning=None):
        on_warning("Cannot read directory 'Locked': Permission denied")
        yield from ()

    mocker.patch('catalog_app.reconciler.scan_folder', scan_with_locked_dir)
    events = []
    outcome = run(engine.reconcile(movies, events.append))

    assert outcome.as_counts() == {'new': 0, 'updated': 0, 'removed': 0}
    assert any(e.kind == ScanEventKind.LOG and "Locked" in (e.message or "") for e in events)
    assert not any(e.kind == ScanEventKind.ERROR for e in events)
    assert events[-1].kind == ScanEventKind.DONE
