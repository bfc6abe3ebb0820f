"""Database schema and connection management for SkaGallery.

Uses SQLAlchemy Core (not ORM) for explicit SQL control. Each logical
document collection of the gallery is one table; stats tables carry a
``version`` column so read-modify-write transactions can detect
concurrent writers.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine

from skagallery.config import Config

# Shared metadata for all tables
metadata = MetaData()


# =============================================================================
# Media
# =============================================================================

media = Table(
    "media",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("source_kind", String, nullable=False),  # attachment, generic-url, gif-provider
    Column("locator", String, nullable=False),  # local path or remote URL
    Column("filename", String, nullable=False),
    Column("size_bytes", Integer, nullable=True),
    Column("content_type", String, nullable=True),
    Column("width", Integer, nullable=True),
    Column("height", Integer, nullable=True),
    Column("author_id", String, nullable=True),
    Column("author_username", String, nullable=True),
    Column("author_display_name", String, nullable=True),
    Column("source_message_id", String, nullable=True),
    Column("source_message_link", String, nullable=True),
    Column("tags", JSON, nullable=False, default=list),
    Column("created_at", DateTime, nullable=False),
    Index("ix_media_filename", "filename"),
    Index("ix_media_source_message", "source_message_id"),
    Index("ix_media_author", "author_id"),
    Index("ix_media_kind", "source_kind"),
)


# =============================================================================
# Statistics
# =============================================================================

user_stats = Table(
    "user_stats",
    metadata,
    Column("user_id", String, primary_key=True),  # Discord snowflake
    Column("username", String, nullable=True),
    Column("display_name", String, nullable=True),
    Column("upload_count", Integer, nullable=False, default=0),
    Column("total_size_bytes", Integer, nullable=False, default=0),
    Column("avg_size_bytes", Integer, nullable=False, default=0),
    Column("first_upload_at", DateTime, nullable=True),
    Column("last_upload_at", DateTime, nullable=True),
    Column("content_types", JSON, nullable=False, default=dict),
    Column("migrated_from_existing", Boolean, nullable=False, default=False),
    Column("last_updated_at", DateTime, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    # Range queries for rankings
    Index("ix_user_stats_upload_count", "upload_count"),
    Index("ix_user_stats_total_size", "total_size_bytes"),
    Index("ix_user_stats_avg_size", "avg_size_bytes"),
    Index("ix_user_stats_migrated", "migrated_from_existing"),
)

weekly_stats = Table(
    "weekly_stats",
    metadata,
    Column("week_id", String, primary_key=True),  # YYYY-Www
    Column("per_user", JSON, nullable=False, default=dict),
    Column("total_uploads", Integer, nullable=False, default=0),
    Column("total_users", Integer, nullable=False, default=0),
    Column("last_updated_at", DateTime, nullable=False),
    Column("version", Integer, nullable=False, default=1),
)

server_stats = Table(
    "server_stats",
    metadata,
    Column("id", String, primary_key=True),  # singleton "global"
    Column("total_users", Integer, nullable=False, default=0),
    Column("total_images", Integer, nullable=False, default=0),
    Column("avg_images_per_user", Integer, nullable=False, default=0),
    Column("median_uploads", Integer, nullable=False, default=0),
    Column("content_types", JSON, nullable=False, default=dict),
    Column("migrated_from_existing", Boolean, nullable=False, default=False),
    Column("last_updated_at", DateTime, nullable=False),
)


# =============================================================================
# Bookkeeping
# =============================================================================

watermark = Table(
    "watermark",
    metadata,
    Column("id", String, primary_key=True),  # singleton "ingestion"
    Column("last_processed_at", DateTime, nullable=False),
)

command_posts = Table(
    "command_posts",
    metadata,
    Column("message_id", String, primary_key=True),  # Bot-authored reply
    Column("command_name", String, nullable=False),
    Column("tag", String, nullable=True),
    Column("media_id", String, nullable=True),
    Column("invoked_by", String, nullable=True),
    Column("channel_id", String, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Index("ix_command_posts_media", "media_id"),
)


# =============================================================================
# Helper Functions
# =============================================================================


def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    db_path = config.database_path

    # Ensure data directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=config.log_level == "DEBUG",
    )

    # Enable WAL mode for better concurrency
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.commit()

    return engine


def create_tables(engine: Engine) -> None:
    """Create all tables in the database.

    Args:
        engine: SQLAlchemy Engine instance.
    """
    metadata.create_all(engine)
