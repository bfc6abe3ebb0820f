"""Pydantic models for SkaGallery entities.

These models bridge between the database (SQLAlchemy Core) and application
code, providing validation and serialization.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from ulid import ULID

# =============================================================================
# Enums
# =============================================================================


class SourceKind(str, Enum):
    """Where an archived item came from; decides its identity strategy."""

    ATTACHMENT = "attachment"
    GENERIC_URL = "generic-url"
    GIF_PROVIDER = "gif-provider"


class RankField(str, Enum):
    """UserStats fields that can be ranked with a range query."""

    UPLOAD_COUNT = "upload_count"
    TOTAL_SIZE = "total_size_bytes"
    AVG_SIZE = "avg_size_bytes"


class MediaFilter(str, Enum):
    """Media type filter offered by the random/react commands."""

    IMAGE = "img"
    GIF = "gif"


# =============================================================================
# Helper Functions
# =============================================================================

WEEK_ID_PATTERN = re.compile(r"(\d{4})-W(\d{2})")


def generate_id() -> str:
    """Generate a new ULID for entities."""
    return str(ULID())


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to aware UTC.

    SQLite drops tzinfo, so naive values read back are treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def week_id_for(moment: datetime) -> str:
    """Return the ISO week id (``YYYY-Www``) containing a moment, in UTC."""
    year, week, _ = ensure_utc(moment).isocalendar()
    return f"{year}-W{week:02d}"


def week_bounds(week_id: str) -> tuple[datetime, datetime]:
    """Compute the UTC start (Monday 00:00:00) and end of an ISO week.

    Args:
        week_id: Week identifier like ``2025-W07``.

    Returns:
        (week_start, week_end) where week_end is Sunday 23:59:59.

    Raises:
        ValueError: If the id is malformed or names a week that doesn't exist.
    """
    match = WEEK_ID_PATTERN.fullmatch(week_id)
    if not match:
        raise ValueError(f"Invalid week id: {week_id}")
    start = datetime.fromisocalendar(int(match.group(1)), int(match.group(2)), 1)
    start = start.replace(tzinfo=timezone.utc)
    return start, start + timedelta(days=7, seconds=-1)


# =============================================================================
# Media
# =============================================================================


class Author(BaseModel):
    """The user who posted an archived item."""

    id: str
    username: str | None = None
    display_name: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.username or self.id


class MediaRecordBase(BaseModel):
    """Fields shared by every archived item."""

    model_config = ConfigDict(from_attributes=True)

    # Whether filename identifies exactly one record of this variant
    unique_filename: ClassVar[bool] = True

    id: str = Field(default_factory=generate_id)
    locator: str
    filename: str
    size_bytes: int | None = None
    content_type: str | None = None
    width: int | None = None
    height: int | None = None
    author: Author | None = None
    source_message_id: str | None = None
    source_message_link: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_local(self) -> bool:
        """True when the locator is a path in local storage."""
        return not self.locator.startswith(("http://", "https://"))

    @property
    def is_gif_provider(self) -> bool:
        return self.source_kind == SourceKind.GIF_PROVIDER


class AttachmentRecord(MediaRecordBase):
    """A file uploaded directly to the gallery channel."""

    source_kind: Literal[SourceKind.ATTACHMENT] = SourceKind.ATTACHMENT


class UrlRecord(MediaRecordBase):
    """An image linked by URL in message text."""

    source_kind: Literal[SourceKind.GENERIC_URL] = SourceKind.GENERIC_URL


class GifProviderRecord(MediaRecordBase):
    """An animated-GIF provider link, archived by URL and never downloaded.

    The same GIF may be shared more than once, so historical records can
    share a filename.
    """

    unique_filename: ClassVar[bool] = False

    source_kind: Literal[SourceKind.GIF_PROVIDER] = SourceKind.GIF_PROVIDER


MediaRecord = Annotated[
    AttachmentRecord | UrlRecord | GifProviderRecord,
    Field(discriminator="source_kind"),
]

_media_adapter: TypeAdapter[MediaRecord] = TypeAdapter(MediaRecord)

RECORD_CLASSES: dict[SourceKind, type[MediaRecordBase]] = {
    SourceKind.ATTACHMENT: AttachmentRecord,
    SourceKind.GENERIC_URL: UrlRecord,
    SourceKind.GIF_PROVIDER: GifProviderRecord,
}

# Variants whose filename names one record, and those that may repeat one
UNIQUE_FILENAME_KINDS: list[SourceKind] = [
    kind for kind, cls in RECORD_CLASSES.items() if cls.unique_filename
]
SHARED_FILENAME_KINDS: list[SourceKind] = [
    kind for kind, cls in RECORD_CLASSES.items() if not cls.unique_filename
]


def parse_media_record(data: dict[str, Any]) -> MediaRecord:
    """Validate a mapping into the matching MediaRecord variant."""
    return _media_adapter.validate_python(data)


class MediaSource(BaseModel):
    """An incoming attachment or URL to be archived."""

    url: str
    filename: str | None = None  # Attachment name, when there is one
    is_attachment: bool = False
    size_bytes: int | None = None
    content_type: str | None = None
    width: int | None = None
    height: int | None = None


# =============================================================================
# Statistics
# =============================================================================


class UserStats(BaseModel):
    """Lifetime upload counters for one author."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    username: str | None = None
    display_name: str | None = None
    upload_count: int = Field(default=0, ge=0)
    total_size_bytes: int = Field(default=0, ge=0)
    avg_size_bytes: int = Field(default=0, ge=0)
    first_upload_at: datetime | None = None
    last_upload_at: datetime | None = None
    content_types: dict[str, int] = Field(default_factory=dict)
    migrated_from_existing: bool = False
    last_updated_at: datetime = Field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return self.display_name or self.username or self.user_id

    @property
    def top_content_type(self) -> tuple[str, int] | None:
        if not self.content_types:
            return None
        return max(self.content_types.items(), key=lambda item: item[1])


class WeeklyUserEntry(BaseModel):
    """One author's uploads within a week."""

    upload_count: int = Field(default=0, ge=0)
    total_size_bytes: int = Field(default=0, ge=0)
    last_updated_at: datetime = Field(default_factory=utcnow)


class WeeklyStats(BaseModel):
    """Upload counters for one ISO week."""

    model_config = ConfigDict(from_attributes=True)

    week_id: str
    per_user: dict[str, WeeklyUserEntry] = Field(default_factory=dict)
    total_uploads: int = 0
    total_users: int = 0
    last_updated_at: datetime = Field(default_factory=utcnow)

    @property
    def week_start(self) -> datetime:
        return week_bounds(self.week_id)[0]

    @property
    def week_end(self) -> datetime:
        return week_bounds(self.week_id)[1]

    def recount(self) -> None:
        """Recompute the totals from the live per-user mapping."""
        self.total_users = len(self.per_user)
        self.total_uploads = sum(entry.upload_count for entry in self.per_user.values())


class ServerStats(BaseModel):
    """Server-wide rollup of all UserStats."""

    model_config = ConfigDict(from_attributes=True)

    total_users: int = 0
    total_images: int = 0
    avg_images_per_user: int = 0
    median_uploads: int = 0
    content_types: dict[str, int] = Field(default_factory=dict)
    migrated_from_existing: bool = False
    last_updated_at: datetime = Field(default_factory=utcnow)


class Ranking(BaseModel):
    """A user's position for one ranked field."""

    rank: int
    total: int
    value: float
    percentile: int


class MigrationStatus(BaseModel):
    """Whether the stats backfill has completed."""

    has_run: bool
    migrated_user_count: int
    server_stats_exists: bool


class MigrationResult(BaseModel):
    """Summary of a completed stats backfill."""

    media_scanned: int
    media_skipped: int
    users_migrated: int
    batches_written: int
    server_stats: ServerStats


# =============================================================================
# Provenance
# =============================================================================


class CommandPost(BaseModel):
    """Links a bot-authored message to the command invocation that posted it."""

    model_config = ConfigDict(from_attributes=True)

    message_id: str
    command_name: str
    tag: str | None = None
    media_id: str | None = None
    invoked_by: str | None = None
    channel_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Conversion Helpers
# =============================================================================


T = TypeVar("T", bound=BaseModel)


def row_to_model(row, model_class: type[T]) -> T:
    """Convert SQLAlchemy row to Pydantic model.

    Args:
        row: SQLAlchemy row result.
        model_class: Target Pydantic model class.

    Returns:
        Instance of the model class.
    """
    return model_class.model_validate(dict(row._mapping))
