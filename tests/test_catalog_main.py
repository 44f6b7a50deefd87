# tests/test_catalog_main.py
import asyncio
import logging
import pytest
import pytomlpp

import catalog_main
from catalog_app.library_store import LibraryStore

from conftest import make_video


@pytest.fixture(autouse=True)
def clean_app_logger():
    yield
    logger = logging.getLogger("catalog_app")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def offline_config(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[default]\nuse_metadata = false\nmin_file_size_mb = 1\n", encoding='utf-8')
    return path


def run_main(*argv):
    return asyncio.run(catalog_main.main_async(list(argv)))


def test_config_generate_writes_valid_toml(tmp_path):
    target = tmp_path / "generated.toml"
    assert run_main('-q', 'config', 'generate', '--output', str(target)) == 0
    assert pytomlpp.loads(target.read_text(encoding='utf-8'))['default']['min_file_size_mb'] == 200


def test_config_generate_refuses_overwrite_in_quiet_mode(tmp_path):
    target = tmp_path / "generated.toml"
    target.write_text("# mine\n")
    assert run_main('-q', 'config', 'generate', '--output', str(target)) == 1
    assert target.read_text() == "# mine\n"


def test_config_validate(tmp_path, offline_config):
    assert run_main('-q', '--config', str(offline_config), 'config', 'validate') == 0
    offline_config.write_text("[default]\nmin_file_size_mb = -5\n")
    # the loader already rejects it, so this is a fatal configuration error
    assert run_main('-q', '--config', str(offline_config), 'config', 'validate') == 2


def test_folder_add_scan_and_list(tmp_path, offline_config):
    db_path = tmp_path / "lib.db"
    movies = tmp_path / "movies"
    make_video(movies / "Inception.2010.mkv", 5)
    common = ('-q', '--config', str(offline_config), '--db', str(db_path))

    assert run_main(*common, 'folder', 'add', str(movies), '--scan') == 0
    assert run_main(*common, 'folder', 'list') == 0
    assert run_main(*common, 'files') == 0

    store = LibraryStore(db_path)
    folders = store.list_folders_ordered_by_creation()
    assert [f.display_name for f in folders] == ["movies"]
    files = store.list_all_files()
    assert len(files) == 1
    assert files[0].guessed_title == "Inception"


def test_unknown_folder_is_an_application_error(tmp_path, offline_config):
    args = ('-q', '--config', str(offline_config), '--db', str(tmp_path / "lib.db"))
    assert run_main(*args, 'rescan', 'does-not-exist') == 1
    assert run_main(*args, 'hide', 'nope') == 1


def test_reset_needs_confirmation_in_quiet_mode(tmp_path, offline_config):
    args = ('-q', '--config', str(offline_config), '--db', str(tmp_path / "lib.db"))
    assert run_main(*args, 'reset') == 1
    assert run_main(*args, 'reset', '--yes') == 0
