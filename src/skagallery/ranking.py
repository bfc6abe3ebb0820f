"""Rankings and leaderboards over UserStats."""

from __future__ import annotations

from skagallery.logging import get_logger
from skagallery.models import RankField, Ranking, UserStats
from skagallery.stats import StatsAggregator, upload_frequency
from skagallery.store import GalleryStore, NotFoundError

log = get_logger("ranking")

# (minimum percentile, title), highest first
ACHIEVEMENTS: list[tuple[int, str]] = [
    (95, "Gallery Legend"),
    (80, "Power User"),
    (50, "Active Member"),
]


def percentile_for(rank: int, total: int) -> int:
    """Share of users at or below this rank, as a rounded percentage."""
    if total <= 0:
        return 0
    return int((1 - (rank - 1) / total) * 100 + 0.5)


def achievement(percentile: int) -> str | None:
    """Title earned at a percentile, if any."""
    for threshold, title in ACHIEVEMENTS:
        if percentile >= threshold:
            return title
    return None


class RankingEngine:
    """Answers rank and leaderboard queries with count/range lookups.

    Attributes:
        store: Gallery document store.
        stats: StatsAggregator supplying the server-wide user total.
    """

    def __init__(self, store: GalleryStore, stats: StatsAggregator) -> None:
        self.store = store
        self.stats = stats

    async def rank(self, user_id: str, field: RankField) -> Ranking:
        """Rank a user by one field.

        Rank is one more than the number of users with a strictly greater
        value, so ties share a rank.

        Args:
            user_id: Author id.
            field: Field to rank by.

        Returns:
            Ranking with the total taken from server stats.

        Raises:
            NotFoundError: If the user has no stats.
        """
        stats = await self.store.get_user_stats(user_id)
        if stats is None:
            raise NotFoundError(f"No stats for user {user_id}")

        value = getattr(stats, field.value)
        above = await self.store.count_user_stats(field, greater_than=value)
        rank = above + 1

        server = await self.stats.get_server_stats()
        # Server stats lag behind per-user writes by the debounce window
        total = max(server.total_users, rank)

        return Ranking(
            rank=rank,
            total=total,
            value=value,
            percentile=percentile_for(rank, total),
        )

    async def rank_all(self, user_id: str) -> dict[RankField, Ranking]:
        """Rank a user on every rankable field."""
        return {field: await self.rank(user_id, field) for field in RankField}

    async def top_users(self, field: RankField, limit: int = 5) -> list[UserStats]:
        """Leaderboard: users with the highest values of a field."""
        return await self.store.top_user_stats(field, limit)

    async def frequency_rank(self, user_id: str, sample_size: int = 1000) -> Ranking | None:
        """Approximate rank by uploads per day.

        Frequency has no stored column, so the top ``sample_size`` users by
        upload count are ranked among themselves.

        Returns:
            Ranking within the sample, or None when the user has no frequency
            or falls outside the sample.
        """
        stats = await self.store.get_user_stats(user_id)
        if stats is None:
            return None
        frequency = upload_frequency(stats)
        if frequency <= 0:
            return None

        sample = await self.store.top_user_stats(RankField.UPLOAD_COUNT, sample_size)
        if not any(s.user_id == user_id for s in sample):
            log.debug("frequency_rank_outside_sample", user_id=user_id, sample_size=sample_size)
            return None

        frequencies = [upload_frequency(s) for s in sample]
        rank = sum(1 for f in frequencies if f > frequency) + 1
        total = len(sample)
        return Ranking(
            rank=rank,
            total=total,
            value=frequency,
            percentile=percentile_for(rank, total),
        )
