import logging
import sys
from pathlib import Path
from datetime import datetime, timezone

LOGGER_NAME = "catalog_app"
SHORT_FORMAT = '%(levelname)-8s: %(message)s'
VERBOSE_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s:%(lineno)d] %(message)s'

# guessit's rule engine and urllib3 narrate every filename and request at DEBUG.
NOISY_LIBRARY_LOGGERS = ("rebulk", "guessit", "urllib3", "requests")


def _quiet_libraries(level):
    for name in NOISY_LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_logging(log_level_console=logging.INFO, log_file=None, library_log_level=logging.WARNING):
    """Configures the "catalog_app" logger that every catalog_app.* module logger propagates to.

    Console output goes to stderr so it never mixes with tables on stdout. The
    optional file handler always records DEBUG.
    """
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(logging.DEBUG)
    for handler in log.handlers[:]:
        log.removeHandler(handler)
        handler.close()
    _quiet_libraries(library_log_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level_console)
    console_handler.setFormatter(logging.Formatter(
        VERBOSE_FORMAT if log_level_console <= logging.DEBUG else SHORT_FORMAT, datefmt='%H:%M:%S'))
    log.addHandler(console_handler)

    if log_file:
        log_file_path = Path(log_file).expanduser().resolve()
        try:
            log_file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file_path, mode='a', encoding='utf-8')
        except OSError as e:
            log.error(f"Failed to configure file logging to '{log_file}': {e}")
            return log
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S%z'))
        log.addHandler(file_handler)
        log.info(f"--- Catalog session {datetime.now(timezone.utc).isoformat()}: {' '.join(sys.argv[1:]) or '(no command)'} ---")
    return log
