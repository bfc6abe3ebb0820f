"""One-shot backfill of UserStats from historical media records.

Media archived before stats were tracked has no counters. The migration scans
every record, groups by author, and writes the same lifetime aggregates that
replaying ``on_upload`` for each record would have produced, then recomputes
ServerStats with the migration marker set.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from skagallery.logging import get_logger
from skagallery.models import MediaRecord, MigrationResult, MigrationStatus, UserStats, utcnow
from skagallery.stats import StatsAggregator, apply_upload, content_type_label
from skagallery.store import GalleryStore

if TYPE_CHECKING:
    from skagallery.config import Config

log = get_logger("stats_migration")


def aggregate_author(records: list[MediaRecord], label_for) -> UserStats:
    """Fold one author's records into a UserStats, oldest first."""
    stats = None
    now = utcnow()
    for record in sorted(records, key=lambda r: r.created_at):
        stats = apply_upload(stats, record, label_for(record), now)
    return stats.model_copy(update={"migrated_from_existing": True})


class StatsMigrationRunner:
    """Seeds statistics from existing media.

    Attributes:
        store: Gallery document store.
        stats: StatsAggregator used for the final server recompute.
        config: Application configuration.
    """

    def __init__(
        self,
        store: GalleryStore,
        stats: StatsAggregator,
        config: "Config",
    ) -> None:
        self.store = store
        self.stats = stats
        self.config = config

    async def status(self) -> MigrationStatus:
        """Report whether the migration has completed.

        It counts as run only when migrated user documents exist and server
        stats carry the marker.
        """
        migrated_users = await self.store.count_migrated_user_stats()
        server = await self.store.get_server_stats()
        return MigrationStatus(
            has_run=migrated_users > 0 and bool(server and server.migrated_from_existing),
            migrated_user_count=migrated_users,
            server_stats_exists=server is not None,
        )

    async def run_safely(self) -> MigrationResult | None:
        """Run the migration unless it already has.

        Returns:
            The result, or None if the migration had already run.
        """
        status = await self.status()
        if status.has_run:
            log.info("stats_migration_already_run", migrated_users=status.migrated_user_count)
            return None
        return await self.migrate_existing()

    async def migrate_existing(self) -> MigrationResult:
        """Scan all media and overwrite UserStats for every author.

        Writes are keyed by user id, so rerunning after a partial failure
        overwrites rather than double counts.
        """
        log.info("stats_migration_started")

        by_author: dict[str, list[MediaRecord]] = defaultdict(list)
        scanned = 0
        skipped = 0
        async for record in self.store.iter_media():
            scanned += 1
            if record.author is None or not record.author.id:
                skipped += 1
                continue
            by_author[record.author.id].append(record)

        provider = self.config.gif_provider
        users = [
            aggregate_author(records, lambda r: content_type_label(r, provider))
            for records in by_author.values()
        ]

        batch_size = self.config.migration.batch_size
        batches = 0
        for start in range(0, len(users), batch_size):
            batch = users[start : start + batch_size]
            await self.store.batch_put_user_stats(batch)
            batches += 1
            log.info("stats_migration_batch_written", batch=batches, users=len(batch))

        server = await self.stats.recompute_server_stats(migrated=True)

        log.info(
            "stats_migration_complete",
            media_scanned=scanned,
            media_skipped=skipped,
            users_migrated=len(users),
            batches=batches,
        )
        return MigrationResult(
            media_scanned=scanned,
            media_skipped=skipped,
            users_migrated=len(users),
            batches_written=batches,
            server_stats=server,
        )
