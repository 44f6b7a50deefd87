# --- START OF FILE utils.py ---

import re
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import List, Optional, Set, Any

import dateutil.parser

log = logging.getLogger(__name__)

_MISSING_MARKERS = {"", "n/a", "na", "none", "null"}
_RUNTIME_RE = re.compile(r'(\d+)')
_YEAR_PREFIX_RE = re.compile(r'^\s*(\d{4})')


# --- Value Normalization ---
def clean_value(value: Any) -> Optional[Any]:
    """Maps provider placeholders ('N/A', empty strings) to None; strips strings."""
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return None if stripped.lower() in _MISSING_MARKERS else stripped
    return value


def parse_runtime(value: Any) -> Optional[int]:
    """'148 min' -> 148. Integers pass through; anything unparseable is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    cleaned = clean_value(value)
    if not cleaned:
        return None
    match = _RUNTIME_RE.search(str(cleaned))
    if not match:
        return None
    minutes = int(match.group(1))
    return minutes if minutes > 0 else None


def parse_year(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1800 <= value <= 2200 else None
    cleaned = clean_value(value)
    if not cleaned:
        return None
    text = str(cleaned)
    match = _YEAR_PREFIX_RE.match(text)
    if match:
        return int(match.group(1))
    try:
        return dateutil.parser.parse(text).year
    except (ValueError, OverflowError):
        log.debug(f"Could not parse a year from '{text}'")
        return None


def split_list(value: Any, sep: str = ',') -> List[str]:
    """'Action, Sci-Fi' -> ['Action', 'Sci-Fi']; lists are cleaned element-wise."""
    if isinstance(value, (list, tuple)):
        items = [clean_value(str(v)) for v in value]
    else:
        cleaned = clean_value(value)
        if not cleaned:
            return []
        items = [clean_value(part) for part in str(cleaned).split(sep)]
    return [i for i in items if i]


def format_rating(value: Any) -> Optional[str]:
    cleaned = clean_value(value)
    if cleaned is None:
        return None
    try:
        number = float(cleaned)
    except (TypeError, ValueError):
        return None
    return f"{number:.1f}" if number > 0 else None


def normalize_name(file_name: str) -> str:
    """Stem lower-cased with separators collapsed, used to group duplicate candidates."""
    stem = Path(file_name).stem.lower()
    stem = re.sub(r'[\s._\-]+', ' ', stem)
    return stem.strip()


# --- Time ---
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso_from_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# --- Helper function to check if a path should be ignored ---
def _is_ignored(item_path: Path, ignore_dirs: Set[str], ignore_patterns: List[str]) -> bool:
    """Checks if a given path should be ignored based on config."""
    item_name = item_path.name
    if item_name in ignore_dirs:
        log.debug(f"  -> Ignoring '{item_path}' (matches ignore_dirs: '{item_name}')")
        return True

    for pattern in ignore_patterns:
        try:
            if item_path.match(pattern):
                log.debug(f"  -> Ignoring '{item_path}' (matches ignore pattern: '{pattern}')")
                return True
        except ValueError as e_match:
            log.error(f"  -> Error matching pattern '{pattern}' against '{item_path}': {e_match}")
            return True
    return False
