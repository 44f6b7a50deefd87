# catalog_app/models.py
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, List, Dict, Any

from .enums import MediaKind, MetadataSource, ScanEventKind, ScanJobStatus


@dataclass
class CastMember:
    name: str
    character: Optional[str] = None
    profile_url: Optional[str] = None
    provider_id: Optional[int] = None


@dataclass
class CrewMember:
    name: str
    job: str
    department: Optional[str] = None
    profile_url: Optional[str] = None
    provider_id: Optional[int] = None


@dataclass
class NormalizedMetadata:
    """Provider-independent metadata shape. Every provider adapter produces exactly this."""
    title: str
    year: Optional[int] = None
    plot: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    runtime_minutes: Optional[int] = None
    external_id: Optional[str] = None   # IMDb id, shared by both providers
    provider_id: Optional[int] = None   # TMDB numeric id (movie, show or episode)
    show_id: Optional[int] = None       # TMDB show id for episodes
    rating: Optional[str] = None
    episode_title: Optional[str] = None
    cast: List[CastMember] = field(default_factory=list)
    crew: List[CrewMember] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["NormalizedMetadata"]:
        if not data or not data.get('title'):
            return None
        values = dict(data)
        values['cast'] = [CastMember(**c) for c in values.get('cast') or [] if isinstance(c, dict)]
        values['crew'] = [CrewMember(**c) for c in values.get('crew') or [] if isinstance(c, dict)]
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class ArtworkUrls:
    primary_artwork_url: Optional[str] = None    # poster
    secondary_artwork_url: Optional[str] = None  # backdrop

    def is_empty(self) -> bool:
        return not self.primary_artwork_url and not self.secondary_artwork_url


@dataclass
class ResolvedMetadata:
    """Result of one resolver run: metadata plus the artwork and the provider that produced it."""
    metadata: NormalizedMetadata
    source: MetadataSource
    artwork: ArtworkUrls = field(default_factory=ArtworkUrls)


@dataclass
class ParsedFilename:
    raw: str
    base_name: str
    guessed_title: Optional[str] = None
    guessed_year: Optional[int] = None
    confidence: float = 0.0
    media_kind: MediaKind = MediaKind.MOVIE
    series_title: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None


@dataclass
class CandidateFile:
    """One scanner hit: a regular file that passed the extension and size filters."""
    path: Path
    size: int
    mtime: float


@dataclass
class LibraryFolder:
    id: str
    path: str
    display_name: str
    created_at: str


@dataclass
class MediaFile:
    id: str
    full_path: str
    file_name: str
    folder_id: Optional[str] = None
    extension: Optional[str] = None
    file_size_bytes: Optional[int] = None
    modified_at: Optional[str] = None
    last_seen_at: Optional[str] = None

    guessed_title: Optional[str] = None
    guessed_year: Optional[int] = None
    media_kind: MediaKind = MediaKind.MOVIE
    series_title: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    parsing_confidence: Optional[float] = None

    metadata: Optional[NormalizedMetadata] = None
    metadata_source: Optional[MetadataSource] = None
    primary_artwork_url: Optional[str] = None
    secondary_artwork_url: Optional[str] = None

    is_favorite: bool = False
    is_hidden: bool = False

    @property
    def is_manual(self) -> bool:
        return self.metadata_source == MetadataSource.MANUAL

    @property
    def is_metadata_incomplete(self) -> bool:
        if self.is_manual:
            return False
        return self.metadata is None or not self.primary_artwork_url

    @property
    def display_title(self) -> str:
        if self.metadata and self.metadata.title:
            return self.metadata.title
        if self.media_kind == MediaKind.EPISODE and self.series_title:
            s = f"{self.season_number:02d}" if self.season_number is not None else "??"
            e = f"{self.episode_number:02d}" if self.episode_number is not None else "??"
            return f"{self.series_title} S{s}E{e}"
        if self.guessed_title:
            return f"{self.guessed_title} ({self.guessed_year})" if self.guessed_year else self.guessed_title
        return Path(self.file_name).stem

    def apply_resolved(self, resolved: ResolvedMetadata):
        self.metadata = resolved.metadata
        self.metadata_source = resolved.source
        if resolved.artwork.primary_artwork_url:
            self.primary_artwork_url = resolved.artwork.primary_artwork_url
        if resolved.artwork.secondary_artwork_url:
            self.secondary_artwork_url = resolved.artwork.secondary_artwork_url


@dataclass
class ScanOutcome:
    new: int = 0
    updated: int = 0
    removed: int = 0
    incomplete_ids: List[str] = field(default_factory=list)

    def as_counts(self) -> Dict[str, int]:
        return {'new': self.new, 'updated': self.updated, 'removed': self.removed}


@dataclass
class ScanEvent:
    kind: ScanEventKind
    path: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class QueueStats:
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    running: bool = False


@dataclass
class ScanJob:
    id: str
    folder_id: str
    started_at: str
    status: ScanJobStatus = ScanJobStatus.RUNNING
    finished_at: Optional[str] = None
    files_seen: int = 0
    error_message: Optional[str] = None
    outcome: Optional[ScanOutcome] = None


@dataclass
class DuplicateGroup:
    normalized_name: str
    file_size_bytes: int
    files: List[MediaFile] = field(default_factory=list)
