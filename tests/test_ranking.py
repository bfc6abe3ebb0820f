"""Tests for rankings and leaderboards."""

from datetime import datetime, timedelta, timezone

import pytest

from skagallery.models import RankField, ServerStats, UserStats
from skagallery.ranking import RankingEngine, achievement, percentile_for
from skagallery.stats import StatsAggregator
from skagallery.store import GalleryStore, NotFoundError

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def ranking(store: GalleryStore, aggregator: StatsAggregator) -> RankingEngine:
    return RankingEngine(store, aggregator)


async def seed(store: GalleryStore) -> None:
    await store.batch_put_user_stats(
        [
            UserStats(
                user_id="a",
                upload_count=10,
                total_size_bytes=100,
                first_upload_at=T0,
                last_upload_at=T0 + timedelta(days=5),
            ),
            UserStats(
                user_id="b",
                upload_count=5,
                total_size_bytes=5000,
                first_upload_at=T0,
                last_upload_at=T0 + timedelta(days=1),
            ),
            UserStats(user_id="c", upload_count=5, total_size_bytes=50),
            UserStats(user_id="d", upload_count=1, total_size_bytes=10),
        ]
    )


class TestPercentile:
    def test_top_rank_is_100(self) -> None:
        assert percentile_for(1, 4) == 100

    def test_rounds_half_up(self) -> None:
        # 1 - 1/8 = 87.5%
        assert percentile_for(2, 8) == 88

    def test_empty_total(self) -> None:
        assert percentile_for(1, 0) == 0

    @pytest.mark.parametrize(
        "percentile,title",
        [
            (100, "Gallery Legend"),
            (95, "Gallery Legend"),
            (94, "Power User"),
            (80, "Power User"),
            (50, "Active Member"),
            (49, None),
        ],
    )
    def test_achievement_thresholds(self, percentile: int, title: str | None) -> None:
        assert achievement(percentile) == title


class TestRank:
    @pytest.mark.asyncio
    async def test_ties_share_rank(self, ranking: RankingEngine, store: GalleryStore) -> None:
        await seed(store)

        b = await ranking.rank("b", RankField.UPLOAD_COUNT)
        c = await ranking.rank("c", RankField.UPLOAD_COUNT)
        d = await ranking.rank("d", RankField.UPLOAD_COUNT)

        assert b.rank == c.rank == 2
        assert d.rank == 4
        assert b.total == 4
        assert b.percentile == 75
        assert d.percentile == 25

    @pytest.mark.asyncio
    async def test_more_uploads_rank_strictly_higher(
        self, ranking: RankingEngine, store: GalleryStore
    ) -> None:
        counts = [7, 3, 12, 1, 5]
        await store.batch_put_user_stats(
            [UserStats(user_id=f"u{count}", upload_count=count) for count in counts]
        )

        results = {
            count: await ranking.rank(f"u{count}", RankField.UPLOAD_COUNT) for count in counts
        }

        ordered = sorted(counts, reverse=True)
        assert [results[count].rank for count in ordered] == [1, 2, 3, 4, 5]
        percentiles = [results[count].percentile for count in ordered]
        assert percentiles == sorted(percentiles, reverse=True)
        assert len(set(percentiles)) == len(percentiles)

    @pytest.mark.asyncio
    async def test_rank_by_size(self, ranking: RankingEngine, store: GalleryStore) -> None:
        await seed(store)

        result = await ranking.rank("b", RankField.TOTAL_SIZE)

        assert result.rank == 1
        assert result.value == 5000
        assert result.percentile == 100

    @pytest.mark.asyncio
    async def test_total_never_below_rank(
        self, ranking: RankingEngine, store: GalleryStore
    ) -> None:
        """Stale server stats cannot push percentiles out of range."""
        await seed(store)
        await store.put_server_stats(ServerStats(total_users=1))

        result = await ranking.rank("d", RankField.UPLOAD_COUNT)

        assert result.rank == 4
        assert result.total == 4
        assert 0 <= result.percentile <= 100

    @pytest.mark.asyncio
    async def test_unknown_user(self, ranking: RankingEngine) -> None:
        with pytest.raises(NotFoundError):
            await ranking.rank("ghost", RankField.UPLOAD_COUNT)

    @pytest.mark.asyncio
    async def test_rank_all(self, ranking: RankingEngine, store: GalleryStore) -> None:
        await seed(store)

        ranks = await ranking.rank_all("a")

        assert set(ranks) == set(RankField)
        assert ranks[RankField.UPLOAD_COUNT].rank == 1


class TestLeaderboards:
    @pytest.mark.asyncio
    async def test_top_users(self, ranking: RankingEngine, store: GalleryStore) -> None:
        await seed(store)

        top = await ranking.top_users(RankField.UPLOAD_COUNT, limit=2)

        assert [s.user_id for s in top][0] == "a"
        assert len(top) == 2

    @pytest.mark.asyncio
    async def test_frequency_rank(self, ranking: RankingEngine, store: GalleryStore) -> None:
        await seed(store)

        b = await ranking.frequency_rank("b")
        a = await ranking.frequency_rank("a")

        assert b.rank == 1
        assert b.value == 5.0
        assert a.rank == 2
        assert a.total == 4

    @pytest.mark.asyncio
    async def test_frequency_rank_without_span(
        self, ranking: RankingEngine, store: GalleryStore
    ) -> None:
        await seed(store)
        assert await ranking.frequency_rank("c") is None
        assert await ranking.frequency_rank("ghost") is None

    @pytest.mark.asyncio
    async def test_frequency_rank_outside_sample(
        self, ranking: RankingEngine, store: GalleryStore
    ) -> None:
        await seed(store)
        assert await ranking.frequency_rank("b", sample_size=1) is None
