# catalog_app/filename_parser.py
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from guessit import guessit
from guessit.api import GuessitException

from .enums import MediaKind
from .models import ParsedFilename

log = logging.getLogger(__name__)


def _first_int(value: Any) -> Optional[int]:
    if isinstance(value, list):
        value = value[0] if value else None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _guess(file_name: str) -> Dict[str, Any]:
    try:
        guess = dict(guessit(file_name))
        log.debug(f"Guessit: {guess}")
        return guess
    except GuessitException as e:
        log.warning(f"Guessit failed for '{file_name}': {e}")
        return {}


def compute_confidence(title: Optional[str], year: Optional[int], media_kind: MediaKind,
                       season: Optional[int], episode: Optional[int]) -> float:
    confidence = 0.0
    if title:
        confidence += 0.4
    if year:
        confidence += 0.4
    if media_kind == MediaKind.EPISODE and season is not None and episode is not None:
        confidence += 0.2
    elif media_kind == MediaKind.MOVIE and title and len(title) > 2:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def parse_filename(file_name: str) -> ParsedFilename:
    """Guess title, year and episode numbering from a bare file name."""
    base_name = Path(file_name).stem
    guess = _guess(file_name)

    title = guess.get('title')
    if isinstance(title, list):
        title = title[0] if title else None
    title = str(title).strip() if title else None
    year = _first_int(guess.get('year'))
    season = _first_int(guess.get('season'))
    episode = _first_int(guess.get('episode'))

    is_episode = guess.get('type') == 'episode' or (season is not None and episode is not None)
    media_kind = MediaKind.EPISODE if is_episode else MediaKind.MOVIE

    return ParsedFilename(
        raw=file_name,
        base_name=base_name,
        guessed_title=title,
        guessed_year=year,
        confidence=compute_confidence(title, year, media_kind, season, episode),
        media_kind=media_kind,
        series_title=title if is_episode else None,
        season_number=season if is_episode else None,
        episode_number=episode if is_episode else None,
    )
