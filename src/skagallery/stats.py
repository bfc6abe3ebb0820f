"""Upload statistics for the gallery.

Three tiers of counters are maintained incrementally:
- UserStats: per-author lifetime totals, updated inside a store transaction
  so concurrent uploads and deletes by the same author never lose a delta.
- WeeklyStats: per-week, per-author totals, updated best-effort after the
  user document.
- ServerStats: a rollup recomputed from all UserStats (never from media),
  debounced through a CoalescingQueue so bursts of uploads trigger one scan.

The upload/delete hooks never raise. A stats failure is logged and the
archived media is left untouched.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING

from skagallery.logging import get_logger
from skagallery.models import (
    MediaRecord,
    ServerStats,
    UserStats,
    WeeklyStats,
    WeeklyUserEntry,
    utcnow,
    week_id_for,
)
from skagallery.scheduler import CoalescingQueue
from skagallery.store import GalleryStore, NotFoundError

if TYPE_CHECKING:
    from skagallery.config import Config, GifProviderConfig

log = get_logger("stats")

SERVER_RECOMPUTE_KEY = "server_stats"
UNKNOWN_CONTENT_TYPE = "unknown"


def round_half_up(numerator: float, denominator: float) -> int:
    """Divide and round halves away from zero for non-negative inputs."""
    return int(numerator / denominator + 0.5)


def content_type_label(record: MediaRecord, provider: "GifProviderConfig") -> str:
    """Histogram bucket for a record.

    Falls back from the explicit content type to the gif provider label, then
    to ``"unknown"``. Records archived before kinds were tracked are
    recognised as provider content by the provider name in their locator.
    """
    if record.content_type and record.content_type.strip():
        return record.content_type
    if record.is_gif_provider:
        return provider.label
    name = provider.name.lower()
    if name in record.locator.lower() or name in record.filename.lower():
        return provider.label
    return UNKNOWN_CONTENT_TYPE


def upload_frequency(stats: UserStats) -> float:
    """Uploads per day between the first and last upload (0 with fewer than 2)."""
    if stats.upload_count < 2 or not stats.first_upload_at or not stats.last_upload_at:
        return 0.0
    days = (stats.last_upload_at - stats.first_upload_at).total_seconds() / 86400
    return stats.upload_count / days if days > 0 else 0.0


# =============================================================================
# Pure deltas (run inside store transactions, may be retried)
# =============================================================================


def apply_upload(
    current: UserStats | None,
    record: MediaRecord,
    label: str,
    now: datetime,
) -> UserStats:
    """UserStats after one more upload."""
    author = record.author
    size = record.size_bytes or 0
    if current is None:
        return UserStats(
            user_id=author.id,
            username=author.username,
            display_name=author.display_name,
            upload_count=1,
            total_size_bytes=size,
            avg_size_bytes=size,
            first_upload_at=record.created_at,
            last_upload_at=record.created_at,
            content_types={label: 1},
            last_updated_at=now,
        )

    count = current.upload_count + 1
    total = current.total_size_bytes + size
    content_types = dict(current.content_types)
    content_types[label] = content_types.get(label, 0) + 1
    first = current.first_upload_at
    last = current.last_upload_at

    return current.model_copy(
        update={
            "username": author.username or current.username,
            "display_name": author.display_name or current.display_name,
            "upload_count": count,
            "total_size_bytes": total,
            "avg_size_bytes": total // count,
            "first_upload_at": min(first, record.created_at) if first else record.created_at,
            "last_upload_at": max(last, record.created_at) if last else record.created_at,
            "content_types": content_types,
            "last_updated_at": now,
        }
    )


def apply_delete(
    current: UserStats | None,
    record: MediaRecord,
    label: str,
    now: datetime,
) -> UserStats | None:
    """UserStats after one upload is removed, clamped at zero.

    Returns None (no write) when the author has no stats.
    """
    if current is None:
        return None

    count = max(0, current.upload_count - 1)
    total = max(0, current.total_size_bytes - (record.size_bytes or 0))
    content_types = dict(current.content_types)
    remaining = content_types.get(label, 0) - 1
    if remaining > 0:
        content_types[label] = remaining
    else:
        content_types.pop(label, None)

    return current.model_copy(
        update={
            "upload_count": count,
            "total_size_bytes": total,
            "avg_size_bytes": total // count if count else 0,
            "content_types": content_types,
            "last_updated_at": now,
        }
    )


def apply_weekly_upload(
    current: WeeklyStats | None,
    week_id: str,
    user_id: str,
    size: int,
    now: datetime,
) -> WeeklyStats:
    """WeeklyStats after one more upload by ``user_id``."""
    week = current.model_copy(deep=True) if current else WeeklyStats(week_id=week_id)
    entry = week.per_user.get(user_id) or WeeklyUserEntry()
    week.per_user[user_id] = WeeklyUserEntry(
        upload_count=entry.upload_count + 1,
        total_size_bytes=entry.total_size_bytes + size,
        last_updated_at=now,
    )
    week.recount()
    week.last_updated_at = now
    return week


def apply_weekly_delete(
    current: WeeklyStats | None,
    user_id: str,
    size: int,
    now: datetime,
) -> WeeklyStats | None:
    """WeeklyStats after one upload by ``user_id`` is removed.

    Entries that drop to zero uploads are removed from the mapping.
    Returns None (no write) when there is nothing to decrement.
    """
    if current is None or user_id not in current.per_user:
        return None

    week = current.model_copy(deep=True)
    entry = week.per_user[user_id]
    count = max(0, entry.upload_count - 1)
    if count == 0:
        del week.per_user[user_id]
    else:
        week.per_user[user_id] = WeeklyUserEntry(
            upload_count=count,
            total_size_bytes=max(0, entry.total_size_bytes - size),
            last_updated_at=now,
        )
    week.recount()
    week.last_updated_at = now
    return week


def summarize_user_stats(
    all_stats: list[UserStats],
    migrated: bool = False,
) -> ServerStats:
    """Roll per-user stats up into server stats.

    Users whose uploads have all been deleted are not counted.
    """
    counts = sorted(s.upload_count for s in all_stats if s.upload_count > 0)
    content_types: Counter[str] = Counter()
    for stats in all_stats:
        content_types.update(stats.content_types)

    total_users = len(counts)
    total_images = sum(counts)
    return ServerStats(
        total_users=total_users,
        total_images=total_images,
        avg_images_per_user=round_half_up(total_images, total_users) if total_users else 0,
        median_uploads=counts[len(counts) // 2] if counts else 0,
        content_types={k: v for k, v in content_types.items() if v > 0},
        migrated_from_existing=migrated,
    )


# =============================================================================
# Aggregator
# =============================================================================


class StatsAggregator:
    """Owns UserStats, WeeklyStats and ServerStats.

    Attributes:
        store: Gallery document store.
        config: Application configuration.
        queue: Debounced queue that coalesces server stats recomputes.
    """

    def __init__(
        self,
        store: GalleryStore,
        config: "Config",
        queue: CoalescingQueue | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.queue = queue or CoalescingQueue(config.stats.debounce_seconds)
        self._hooks: set[asyncio.Task] = set()

    # =========================================================================
    # Hooks
    # =========================================================================

    def notify_upload(self, record: MediaRecord) -> None:
        """Fire-and-forget ``on_upload`` for callers on the ingest path."""
        self._track(self.on_upload(record))

    def notify_delete(self, record: MediaRecord) -> None:
        """Fire-and-forget ``on_delete`` for callers on the delete path."""
        self._track(self.on_delete(record))

    def _track(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._hooks.add(task)
        task.add_done_callback(self._hooks.discard)

    async def on_upload(self, record: MediaRecord) -> None:
        """Apply an upload to the author's counters. Never raises."""
        if record.author is None:
            log.warning("stats_upload_skipped_no_author", media_id=record.id)
            return

        user_id = record.author.id
        label = content_type_label(record, self.config.gif_provider)
        try:
            stats = await self.store.transact_user_stats(
                user_id,
                lambda current: apply_upload(current, record, label, utcnow()),
            )
        except Exception as e:
            log.error("stats_upload_failed", media_id=record.id, user_id=user_id, error=str(e))
            return

        week_id = week_id_for(record.created_at)
        try:
            await self.store.transact_weekly_stats(
                week_id,
                lambda current: apply_weekly_upload(
                    current, week_id, user_id, record.size_bytes or 0, utcnow()
                ),
            )
        except Exception as e:
            log.warning("weekly_stats_upload_failed", week_id=week_id, user_id=user_id, error=str(e))

        self.schedule_server_recompute()
        log.debug(
            "stats_upload_applied",
            user_id=user_id,
            upload_count=stats.upload_count,
            content_type=label,
        )

    async def on_delete(self, record: MediaRecord) -> None:
        """Remove a deleted upload from the author's counters. Never raises."""
        if record.author is None:
            log.warning("stats_delete_skipped_no_author", media_id=record.id)
            return

        user_id = record.author.id
        label = content_type_label(record, self.config.gif_provider)
        try:
            stats = await self.store.transact_user_stats(
                user_id,
                lambda current: apply_delete(current, record, label, utcnow()),
            )
        except Exception as e:
            log.error("stats_delete_failed", media_id=record.id, user_id=user_id, error=str(e))
            return

        if stats is None:
            log.info("stats_delete_no_user_stats", user_id=user_id)
            return

        week_id = week_id_for(record.created_at)
        try:
            await self.store.transact_weekly_stats(
                week_id,
                lambda current: apply_weekly_delete(
                    current, user_id, record.size_bytes or 0, utcnow()
                ),
            )
        except Exception as e:
            log.warning("weekly_stats_delete_failed", week_id=week_id, user_id=user_id, error=str(e))

        self.schedule_server_recompute()
        log.debug("stats_delete_applied", user_id=user_id, upload_count=stats.upload_count)

    # =========================================================================
    # Server rollup
    # =========================================================================

    def schedule_server_recompute(self) -> None:
        """Request a debounced server stats recompute."""
        self.queue.request(SERVER_RECOMPUTE_KEY, self.recompute_server_stats)

    async def recompute_server_stats(self, migrated: bool | None = None) -> ServerStats:
        """Rebuild ServerStats from a full scan of UserStats.

        Args:
            migrated: Value for the migration marker. None keeps the stored one,
                so routine refreshes never clear it.

        Returns:
            The stored ServerStats.
        """
        if migrated is None:
            existing = await self.store.get_server_stats()
            migrated = bool(existing and existing.migrated_from_existing)

        stats = summarize_user_stats(await self.store.list_user_stats(), migrated=migrated)
        await self.store.put_server_stats(stats)
        log.info(
            "server_stats_recomputed",
            total_users=stats.total_users,
            total_images=stats.total_images,
            median_uploads=stats.median_uploads,
        )
        return stats

    async def refresh_server_stats(self) -> ServerStats:
        """Recompute server stats immediately (admin refresh)."""
        return await self.recompute_server_stats()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_user_stats(self, user_id: str) -> UserStats:
        """Get a user's stats.

        Raises:
            NotFoundError: If the user has never uploaded.
        """
        stats = await self.store.get_user_stats(user_id)
        if stats is None:
            raise NotFoundError(f"No stats for user {user_id}")
        return stats

    async def get_server_stats(self) -> ServerStats:
        """Get server stats, computing them on first read."""
        stats = await self.store.get_server_stats()
        if stats is None:
            log.info("server_stats_missing_computing")
            stats = await self.recompute_server_stats()
        return stats

    async def get_weekly_stats(self, week_id: str | None = None) -> WeeklyStats:
        """Get a week's stats (the current week by default); empty if none."""
        week_id = week_id or week_id_for(utcnow())
        stats = await self.store.get_weekly_stats(week_id)
        return stats or WeeklyStats(week_id=week_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def flush(self) -> None:
        """Wait for outstanding hooks, then run pending recomputes now."""
        while self._hooks:
            await asyncio.gather(*list(self._hooks), return_exceptions=True)
        await self.queue.flush()

    async def close(self) -> None:
        await self.flush()
        await self.queue.close()
