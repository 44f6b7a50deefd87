# catalog_app/enums.py
from enum import Enum


class MediaKind(str, Enum):
    MOVIE = "movie"
    EPISODE = "episode"

    def __str__(self):
        return self.value


class MetadataSource(str, Enum):
    """Where a record's metadata came from. MANUAL is authoritative and never touched by automation."""
    TMDB = "tmdb"
    OMDB = "omdb"
    MANUAL = "manual"

    def __str__(self):
        return self.value


class ScanEventKind(str, Enum):
    START = "start"
    FILE = "file"
    LOG = "log"
    ERROR = "error"
    DONE = "done"

    def __str__(self):
        return self.value


class QueueState(Enum):
    """
    Lifecycle of the enrichment queue:
    IDLE -> RUNNING -> (PAUSED <-> RUNNING) -> IDLE
    """
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"

    def __str__(self):
        return self.name.replace("_", " ").title()


class ScanJobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    def __str__(self):
        return self.value
