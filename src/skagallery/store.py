"""Document store for the gallery.

GalleryStore is the one handle every component receives in its constructor.
It exposes document-style primitives (add, get, field queries, delete,
read-modify-write transactions and bounded batch writes) over the
SQLAlchemy Core tables in ``skagallery.database``.

Transactions are optimistic: the document's ``version`` is read with it and
the write only lands if the version is unchanged. A concurrent writer makes
the write miss, which raises TransactionConflictError internally and the
whole read-modify-write is retried.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Table, func, insert, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from skagallery.config import MAX_BATCH_WRITES
from skagallery.database import (
    command_posts,
    media,
    server_stats,
    user_stats,
    watermark,
    weekly_stats,
)
from skagallery.logging import get_logger
from skagallery.models import (
    UNIQUE_FILENAME_KINDS,
    Author,
    CommandPost,
    MediaRecord,
    RankField,
    ServerStats,
    SourceKind,
    UserStats,
    WeeklyStats,
    ensure_utc,
    parse_media_record,
    row_to_model,
)

log = get_logger("store")

SERVER_STATS_KEY = "global"
WATERMARK_KEY = "ingestion"
TRANSACTION_ATTEMPTS = 5


class GalleryError(Exception):
    """Base class for gallery errors."""


class NotFoundError(GalleryError):
    """A lookup found nothing (media, user stats, provenance target)."""


class TransactionConflictError(GalleryError):
    """A concurrent writer changed the document mid-transaction."""


class TransactionAbortedError(GalleryError):
    """A transaction kept conflicting until its retries ran out."""


@dataclass(frozen=True)
class _Collection:
    """How a versioned collection maps between rows and models."""

    table: Table
    key: str
    load: Callable[[dict[str, Any]], Any]
    dump: Callable[[Any], dict[str, Any]]


def _load_user_stats(data: dict[str, Any]) -> UserStats:
    for field in ("first_upload_at", "last_upload_at", "last_updated_at"):
        data[field] = ensure_utc(data[field])
    data["content_types"] = data["content_types"] or {}
    return UserStats.model_validate(data)


def _dump_user_stats(stats: UserStats) -> dict[str, Any]:
    return stats.model_dump()


def _load_weekly_stats(data: dict[str, Any]) -> WeeklyStats:
    data["last_updated_at"] = ensure_utc(data["last_updated_at"])
    data["per_user"] = data["per_user"] or {}
    return WeeklyStats.model_validate(data)


def _dump_weekly_stats(stats: WeeklyStats) -> dict[str, Any]:
    return {
        "week_id": stats.week_id,
        "per_user": {
            user_id: entry.model_dump(mode="json")
            for user_id, entry in stats.per_user.items()
        },
        "total_uploads": stats.total_uploads,
        "total_users": stats.total_users,
        "last_updated_at": stats.last_updated_at,
    }


USER_STATS = _Collection(user_stats, "user_id", _load_user_stats, _dump_user_stats)
WEEKLY_STATS = _Collection(weekly_stats, "week_id", _load_weekly_stats, _dump_weekly_stats)


def media_to_row(record: MediaRecord) -> dict[str, Any]:
    """Flatten a MediaRecord into column values."""
    author = record.author
    return {
        "id": record.id,
        "source_kind": record.source_kind.value,
        "locator": record.locator,
        "filename": record.filename,
        "size_bytes": record.size_bytes,
        "content_type": record.content_type,
        "width": record.width,
        "height": record.height,
        "author_id": author.id if author else None,
        "author_username": author.username if author else None,
        "author_display_name": author.display_name if author else None,
        "source_message_id": record.source_message_id,
        "source_message_link": record.source_message_link,
        "tags": list(record.tags),
        "created_at": record.created_at,
    }


def row_to_media(row) -> MediaRecord:
    """Rebuild the MediaRecord variant stored in a row."""
    data = dict(row._mapping)
    author_id = data.pop("author_id")
    username = data.pop("author_username")
    display_name = data.pop("author_display_name")
    data["author"] = (
        Author(id=author_id, username=username, display_name=display_name)
        if author_id
        else None
    )
    data["tags"] = data["tags"] or []
    data["created_at"] = ensure_utc(data["created_at"])
    return parse_media_record(data)


class GalleryStore:
    """Transactional document access for media, stats and bookkeeping.

    Attributes:
        engine: SQLAlchemy database engine.
    """

    def __init__(self, engine: Engine) -> None:
        """Initialize the store.

        Args:
            engine: SQLAlchemy database engine with tables created.
        """
        self.engine = engine

    # =========================================================================
    # Media
    # =========================================================================

    async def add_media(self, record: MediaRecord) -> str:
        """Insert a media record and return its id."""
        with self.engine.begin() as conn:
            conn.execute(insert(media).values(**media_to_row(record)))
        return record.id

    async def get_media(self, media_id: str) -> MediaRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(media).where(media.c.id == media_id)).first()
        return row_to_media(row) if row else None

    def _media_query(
        self,
        *,
        filename: str | None = None,
        source_message_id: str | None = None,
        author_id: str | None = None,
        tag: str | None = None,
        source_kinds: Sequence[SourceKind] | None = None,
    ):
        stmt = select(media)
        if filename is not None:
            stmt = stmt.where(media.c.filename == filename)
        if source_message_id is not None:
            stmt = stmt.where(media.c.source_message_id == source_message_id)
        if author_id is not None:
            stmt = stmt.where(media.c.author_id == author_id)
        if tag is not None:
            # array-contains over the JSON tag list
            stmt = stmt.where(
                text(
                    "EXISTS (SELECT 1 FROM json_each(media.tags) "
                    "WHERE json_each.value = :tag)"
                ).bindparams(tag=tag)
            )
        if source_kinds:
            stmt = stmt.where(media.c.source_kind.in_([k.value for k in source_kinds]))
        return stmt

    async def find_media(self, **filters: Any) -> list[MediaRecord]:
        """Query media by field equality and tag membership.

        Accepts any of ``filename``, ``source_message_id``, ``author_id``,
        ``tag`` and ``source_kinds``; results are ordered oldest first.
        """
        stmt = self._media_query(**filters).order_by(media.c.created_at, media.c.id)
        with self.engine.connect() as conn:
            return [row_to_media(row) for row in conn.execute(stmt)]

    async def sample_media(self, limit: int = 1, **filters: Any) -> list[MediaRecord]:
        """Pick up to ``limit`` random records matching the filters."""
        stmt = self._media_query(**filters).order_by(func.random()).limit(limit)
        with self.engine.connect() as conn:
            return [row_to_media(row) for row in conn.execute(stmt)]

    async def iter_media(self, chunk_size: int = 1000) -> AsyncIterator[MediaRecord]:
        """Yield every media record, paging by id."""
        last_id = ""
        while True:
            stmt = (
                select(media)
                .where(media.c.id > last_id)
                .order_by(media.c.id)
                .limit(chunk_size)
            )
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
            if not rows:
                return
            for row in rows:
                yield row_to_media(row)
            last_id = rows[-1].id

    async def filename_exists(self, filename: str, unique_only: bool = False) -> bool:
        """Check whether any record uses a filename.

        Args:
            filename: Filename to look for.
            unique_only: Only consider variants whose filename is unique.
        """
        stmt = select(media.c.id).where(media.c.filename == filename)
        if unique_only:
            stmt = stmt.where(
                media.c.source_kind.in_([kind.value for kind in UNIQUE_FILENAME_KINDS])
            )
        with self.engine.connect() as conn:
            return conn.execute(stmt.limit(1)).first() is not None

    async def count_media(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(media)).scalar() or 0

    async def delete_media(self, media_id: str) -> bool:
        """Delete a record. Returns False if it was already gone."""
        with self.engine.begin() as conn:
            result = conn.execute(media.delete().where(media.c.id == media_id))
        return result.rowcount > 0

    async def add_tag(self, media_id: str, tag: str) -> bool:
        """Add a tag with set semantics. Returns True if the record changed.

        Raises:
            NotFoundError: If the record doesn't exist.
        """
        return self._change_tags(media_id, tag, add=True)

    async def remove_tag(self, media_id: str, tag: str) -> bool:
        """Remove a tag. Returns True if the record changed.

        Raises:
            NotFoundError: If the record doesn't exist.
        """
        return self._change_tags(media_id, tag, add=False)

    def _change_tags(self, media_id: str, tag: str, add: bool) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(select(media.c.tags).where(media.c.id == media_id)).first()
            if row is None:
                raise NotFoundError(f"No media with id {media_id}")
            tags = list(row.tags or [])
            if add == (tag in tags):
                return False
            tags = tags + [tag] if add else [t for t in tags if t != tag]
            conn.execute(update(media).where(media.c.id == media_id).values(tags=tags))
        return True

    # =========================================================================
    # Transactions
    # =========================================================================

    def _attempt_transaction(
        self,
        collection: _Collection,
        key: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        table = collection.table
        key_column = table.c[collection.key]

        with self.engine.begin() as conn:
            row = conn.execute(select(table).where(key_column == key)).first()
            if row is None:
                current, version = None, 0
            else:
                data = dict(row._mapping)
                version = data.pop("version")
                current = collection.load(data)

            updated = fn(current)
            if updated is None:
                return current

            values = collection.dump(updated)
            if row is None:
                try:
                    conn.execute(insert(table).values(**values, version=1))
                except IntegrityError:
                    raise TransactionConflictError(f"{table.name}/{key} created concurrently")
            else:
                result = conn.execute(
                    update(table)
                    .where(key_column == key, table.c.version == version)
                    .values(**values, version=version + 1)
                )
                if result.rowcount != 1:
                    raise TransactionConflictError(f"{table.name}/{key} changed concurrently")
        return updated

    async def _run_transaction(
        self,
        collection: _Collection,
        key: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                return self._attempt_transaction(collection, key, fn)
            except TransactionConflictError as e:
                log.debug(
                    "transaction_conflict",
                    collection=collection.table.name,
                    key=key,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(0)
        raise TransactionAbortedError(
            f"{collection.table.name}/{key}: gave up after {TRANSACTION_ATTEMPTS} attempts"
        )

    async def transact_user_stats(
        self,
        user_id: str,
        fn: Callable[[UserStats | None], UserStats | None],
    ) -> UserStats | None:
        """Atomically read-modify-write one user's stats.

        ``fn`` receives the current document (None if absent) and returns the
        replacement, or None to leave the document untouched. It may run more
        than once, so it must not have side effects.
        """
        return await self._run_transaction(USER_STATS, user_id, fn)

    async def transact_weekly_stats(
        self,
        week_id: str,
        fn: Callable[[WeeklyStats | None], WeeklyStats | None],
    ) -> WeeklyStats | None:
        """Atomically read-modify-write one week's stats."""
        return await self._run_transaction(WEEKLY_STATS, week_id, fn)

    # =========================================================================
    # User stats
    # =========================================================================

    async def get_user_stats(self, user_id: str) -> UserStats | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(user_stats).where(user_stats.c.user_id == user_id)).first()
        return _load_user_stats(dict(row._mapping)) if row else None

    async def list_user_stats(self) -> list[UserStats]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(user_stats).order_by(user_stats.c.user_id))
            return [_load_user_stats(dict(row._mapping)) for row in rows]

    async def count_user_stats(
        self,
        field: RankField | None = None,
        greater_than: float | None = None,
    ) -> int:
        """Count users, optionally only those with ``field > greater_than``."""
        stmt = select(func.count()).select_from(user_stats)
        if field is not None and greater_than is not None:
            stmt = stmt.where(user_stats.c[field.value] > greater_than)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    async def top_user_stats(self, field: RankField, limit: int) -> list[UserStats]:
        """Users ordered by a field, highest first."""
        stmt = (
            select(user_stats)
            .order_by(user_stats.c[field.value].desc(), user_stats.c.user_id)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [_load_user_stats(dict(row._mapping)) for row in conn.execute(stmt)]

    async def count_migrated_user_stats(self) -> int:
        stmt = (
            select(func.count())
            .select_from(user_stats)
            .where(user_stats.c.migrated_from_existing.is_(True))
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    async def batch_put_user_stats(self, batch: Sequence[UserStats]) -> None:
        """Overwrite user stats documents in one atomic batch.

        Raises:
            ValueError: If the batch exceeds MAX_BATCH_WRITES documents.
        """
        if len(batch) > MAX_BATCH_WRITES:
            raise ValueError(
                f"Batch of {len(batch)} exceeds the limit of {MAX_BATCH_WRITES} writes"
            )
        with self.engine.begin() as conn:
            for stats in batch:
                values = _dump_user_stats(stats)
                stmt = sqlite_insert(user_stats).values(**values, version=1)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id"],
                    set_={
                        **{k: v for k, v in values.items() if k != "user_id"},
                        "version": user_stats.c.version + 1,
                    },
                )
                conn.execute(stmt)

    # =========================================================================
    # Weekly and server stats
    # =========================================================================

    async def get_weekly_stats(self, week_id: str) -> WeeklyStats | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(weekly_stats).where(weekly_stats.c.week_id == week_id)
            ).first()
        return _load_weekly_stats(dict(row._mapping)) if row else None

    async def get_server_stats(self) -> ServerStats | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(server_stats).where(server_stats.c.id == SERVER_STATS_KEY)
            ).first()
        if row is None:
            return None
        stats = row_to_model(row, ServerStats)
        stats.last_updated_at = ensure_utc(stats.last_updated_at)
        return stats

    async def put_server_stats(self, stats: ServerStats) -> None:
        values = stats.model_dump()
        with self.engine.begin() as conn:
            stmt = sqlite_insert(server_stats).values(id=SERVER_STATS_KEY, **values)
            stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
            conn.execute(stmt)

    # =========================================================================
    # Watermark
    # =========================================================================

    async def get_watermark(self) -> datetime | None:
        """Timestamp of the most recently ingested item, if any."""
        with self.engine.connect() as conn:
            value = conn.execute(
                select(watermark.c.last_processed_at).where(watermark.c.id == WATERMARK_KEY)
            ).scalar()
        return ensure_utc(value)

    async def advance_watermark(self, moment: datetime) -> datetime:
        """Move the watermark forward to ``moment``; it never moves back.

        Returns:
            The watermark after the call.
        """
        moment = ensure_utc(moment)
        with self.engine.begin() as conn:
            current = ensure_utc(
                conn.execute(
                    select(watermark.c.last_processed_at).where(watermark.c.id == WATERMARK_KEY)
                ).scalar()
            )
            if current is not None and current >= moment:
                return current
            stmt = sqlite_insert(watermark).values(id=WATERMARK_KEY, last_processed_at=moment)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={"last_processed_at": moment},
            )
            conn.execute(stmt)
        return moment

    # =========================================================================
    # Provenance
    # =========================================================================

    async def record_command_post(self, post: CommandPost) -> None:
        values = post.model_dump()
        with self.engine.begin() as conn:
            stmt = sqlite_insert(command_posts).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["message_id"],
                set_={k: v for k, v in values.items() if k != "message_id"},
            )
            conn.execute(stmt)

    async def get_command_post(self, message_id: str) -> CommandPost | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(command_posts).where(command_posts.c.message_id == message_id)
            ).first()
        if row is None:
            return None
        post = row_to_model(row, CommandPost)
        post.created_at = ensure_utc(post.created_at)
        return post
