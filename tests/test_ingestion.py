"""Tests for media ingestion.

Covers:
- Classification and URL extraction
- Downloads with bounded retries (mocked with httpx.MockTransport)
- Collision-free local filenames
- Fallback to the remote URL when downloads keep failing
- Gif-provider dedup and deletion by filename
"""

from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from skagallery.config import Config, IngestionConfig, StatsConfig
from skagallery.ingestion import (
    DownloadError,
    DuplicateError,
    IngestionPipeline,
    is_retryable_status,
    url_basename,
    with_suffix_number,
)
from skagallery.models import Author, MediaSource, SourceKind
from skagallery.stats import StatsAggregator
from skagallery.store import GalleryStore, NotFoundError

ATTACHMENT_URL = "https://cdn.discordapp.com/attachments/1/2/cat.png"
GIF_URL = "https://tenor.com/view/dancing-cat-12345"
AUTHOR = Author(id="u1", username="alice")


@pytest.fixture
def ingest_config(tmp_path: Path) -> Config:
    """Config with retry delays disabled."""
    return Config(
        data_dir=tmp_path,
        stats=StatsConfig(debounce_seconds=0.01, refresh_cron=None),
        ingestion=IngestionConfig(retry_delay_seconds=0, rate_limit_delay_seconds=0),
    )


@pytest.fixture
def make_pipeline(store: GalleryStore, aggregator: StatsAggregator, ingest_config: Config):
    """Build a pipeline whose HTTP client answers with ``handler``."""

    def _make(handler) -> IngestionPipeline:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return IngestionPipeline(store, aggregator, ingest_config, http_client=client)

    return _make


def serve(content: bytes = b"\x89PNG-data", status_code: int = 200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(status_code, content=content)

    return handler, calls


def attachment(filename: str = "cat.png", url: str = ATTACHMENT_URL) -> MediaSource:
    return MediaSource(
        url=url,
        filename=filename,
        is_attachment=True,
        content_type="image/png",
    )


def test_retryable_statuses() -> None:
    assert is_retryable_status(403)
    assert is_retryable_status(429)
    assert is_retryable_status(503)
    assert not is_retryable_status(404)
    assert not is_retryable_status(400)


def test_url_helpers() -> None:
    assert url_basename("https://example.com/a/b/My%20Cat.png?size=large") == "My Cat.png"
    assert with_suffix_number("photo.png", 2) == "photo-2.png"
    assert with_suffix_number("README", 1) == "README-1"


class TestClassification:
    def test_classify(self, make_pipeline) -> None:
        pipeline = make_pipeline(serve()[0])

        assert pipeline.classify(attachment()) == SourceKind.ATTACHMENT
        assert pipeline.classify(MediaSource(url="https://x.org/a.jpg")) == SourceKind.GENERIC_URL
        assert pipeline.classify(MediaSource(url=GIF_URL)) == SourceKind.GIF_PROVIDER

    def test_extract_media_urls(self, make_pipeline) -> None:
        pipeline = make_pipeline(serve()[0])
        content = (
            "look https://example.com/a.png and "
            f"{GIF_URL} plus https://example.com/a.png again, "
            "https://example.com/page and https://example.com/b.JPG?w=10"
        )

        assert pipeline.extract_media_urls(content) == [
            "https://example.com/a.png",
            GIF_URL,
            "https://example.com/b.JPG?w=10",
        ]

    def test_extract_from_empty(self, make_pipeline) -> None:
        assert make_pipeline(serve()[0]).extract_media_urls("") == []

    def test_gif_filename(self, make_pipeline) -> None:
        assert make_pipeline(serve()[0]).gif_filename(GIF_URL) == "tenor-dancing-cat-12345"

    def test_candidate_filename_stays_in_media_dir(self, make_pipeline) -> None:
        pipeline = make_pipeline(serve()[0])
        assert pipeline.candidate_filename(attachment(filename="../../etc/passwd")) == "passwd"
        assert pipeline.candidate_filename(MediaSource(url="https://x.org/p/a.gif")) == "a.gif"


class TestDownloadIngest:
    @pytest.mark.asyncio
    async def test_attachment_downloaded(
        self, make_pipeline, store: GalleryStore, aggregator: StatsAggregator
    ) -> None:
        handler, calls = serve(b"12345")
        pipeline = make_pipeline(handler)

        record = await pipeline.ingest(attachment(), AUTHOR, message_id="m1")
        await pipeline.drain()

        assert calls == [ATTACHMENT_URL]
        assert record.source_kind == SourceKind.ATTACHMENT
        assert record.is_local
        assert record.filename == "cat.png"
        assert Path(record.locator).read_bytes() == b"12345"
        assert record.size_bytes == 5
        assert record.source_message_id == "m1"

        assert await store.get_media(record.id) == record
        assert await store.get_watermark() == record.created_at
        assert (await aggregator.get_user_stats("u1")).upload_count == 1

    @pytest.mark.asyncio
    async def test_name_collisions_get_suffixes(self, make_pipeline) -> None:
        pipeline = make_pipeline(serve()[0])

        first = await pipeline.ingest(attachment(), AUTHOR)
        second = await pipeline.ingest(attachment(), AUTHOR)
        third = await pipeline.ingest(attachment(), AUTHOR)
        await pipeline.drain()

        assert [first.filename, second.filename, third.filename] == [
            "cat.png",
            "cat-1.png",
            "cat-2.png",
        ]
        assert len({first.locator, second.locator, third.locator}) == 3

    @pytest.mark.asyncio
    async def test_existing_file_on_disk_is_not_overwritten(
        self, make_pipeline, ingest_config: Config
    ) -> None:
        ingest_config.media_path.mkdir(parents=True)
        (ingest_config.media_path / "cat.png").write_bytes(b"old")
        pipeline = make_pipeline(serve(b"new")[0])

        record = await pipeline.ingest(attachment(), AUTHOR)
        await pipeline.drain()

        assert record.filename == "cat-1.png"
        assert (ingest_config.media_path / "cat.png").read_bytes() == b"old"

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, make_pipeline) -> None:
        responses = [httpx.Response(503), httpx.Response(200, content=b"ok")]
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return responses.pop(0)

        pipeline = make_pipeline(handler)
        record = await pipeline.ingest(attachment(), AUTHOR)
        await pipeline.drain()

        assert len(calls) == 2
        assert record.is_local

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, make_pipeline) -> None:
        handler, calls = serve(status_code=404)
        pipeline = make_pipeline(handler)

        with pytest.raises(DownloadError) as exc_info:
            await pipeline.download(ATTACHMENT_URL)

        assert exc_info.value.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_store_remote_url(
        self, make_pipeline, store: GalleryStore
    ) -> None:
        handler, calls = serve(status_code=429)
        pipeline = make_pipeline(handler)

        record = await pipeline.ingest(attachment(), AUTHOR)
        await pipeline.drain()

        assert len(calls) == 3
        assert record.source_kind == SourceKind.ATTACHMENT
        assert record.locator == ATTACHMENT_URL
        assert not record.is_local
        assert record.filename == "cat.png"
        assert await store.count_media() == 1

    @pytest.mark.asyncio
    async def test_forbidden_fallback_still_counts_upload(
        self, make_pipeline, store: GalleryStore, aggregator: StatsAggregator
    ) -> None:
        handler, calls = serve(status_code=403)
        pipeline = make_pipeline(handler)

        record = await pipeline.ingest(attachment(), AUTHOR)
        await pipeline.drain()

        assert len(calls) == 3
        assert record.locator == ATTACHMENT_URL
        assert await store.count_media() == 1
        assert (await aggregator.get_user_stats("u1")).upload_count == 1

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, make_pipeline) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            raise httpx.ConnectError("connection refused", request=request)

        pipeline = make_pipeline(handler)

        with pytest.raises(DownloadError) as exc_info:
            await pipeline.download(ATTACHMENT_URL)

        assert exc_info.value.status_code is None
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_generic_url(self, make_pipeline) -> None:
        pipeline = make_pipeline(serve()[0])

        record = await pipeline.ingest(MediaSource(url="https://example.com/img/dog.jpg"), AUTHOR)
        await pipeline.drain()

        assert record.source_kind == SourceKind.GENERIC_URL
        assert record.filename == "dog.jpg"
        assert record.is_local

    @pytest.mark.asyncio
    async def test_backfill_keeps_original_time(self, make_pipeline, store: GalleryStore) -> None:
        posted = datetime(2024, 6, 1, 8, 30, tzinfo=timezone.utc)
        pipeline = make_pipeline(serve()[0])

        record = await pipeline.ingest(attachment(), AUTHOR, created_at=posted)
        await pipeline.drain()

        assert record.created_at == posted
        assert await store.get_watermark() == posted


class TestGifProvider:
    @pytest.mark.asyncio
    async def test_stored_by_url_without_download(self, make_pipeline) -> None:
        handler, calls = serve()
        pipeline = make_pipeline(handler)

        record = await pipeline.ingest(MediaSource(url=GIF_URL), AUTHOR)
        await pipeline.drain()

        assert calls == []
        assert record.source_kind == SourceKind.GIF_PROVIDER
        assert record.locator == GIF_URL
        assert record.filename == "tenor-dancing-cat-12345"

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, make_pipeline, store: GalleryStore) -> None:
        pipeline = make_pipeline(serve()[0])
        await pipeline.ingest(MediaSource(url=GIF_URL), AUTHOR)

        with pytest.raises(DuplicateError):
            await pipeline.ingest(MediaSource(url=GIF_URL), AUTHOR)
        await pipeline.drain()

        assert await store.count_media() == 1

    @pytest.mark.asyncio
    async def test_duplicate_leaves_stats_unchanged(
        self, make_pipeline, aggregator: StatsAggregator
    ) -> None:
        pipeline = make_pipeline(serve()[0])
        await pipeline.ingest(MediaSource(url=GIF_URL), AUTHOR)
        await pipeline.drain()
        before = await aggregator.get_user_stats("u1")

        with pytest.raises(DuplicateError):
            await pipeline.ingest(MediaSource(url=GIF_URL), AUTHOR)
        await pipeline.drain()

        after = await aggregator.get_user_stats("u1")
        assert after.upload_count == before.upload_count == 1
        assert after.content_types == before.content_types


class TestDelete:
    @pytest.mark.asyncio
    async def test_local_delete_removes_file_and_stats(
        self, make_pipeline, store: GalleryStore, aggregator: StatsAggregator
    ) -> None:
        pipeline = make_pipeline(serve()[0])
        record = await pipeline.ingest(attachment(), AUTHOR)
        await pipeline.drain()

        deleted = await pipeline.delete_by_filename("cat.png", is_gif_provider=False)
        await pipeline.drain()

        assert [r.id for r in deleted] == [record.id]
        assert not Path(record.locator).exists()
        assert await store.count_media() == 0
        assert (await aggregator.get_user_stats("u1")).upload_count == 0

    @pytest.mark.asyncio
    async def test_gif_delete_removes_all_duplicates(
        self, make_pipeline, store: GalleryStore, make_record
    ) -> None:
        for _ in range(2):
            await store.add_media(
                make_record(kind=SourceKind.GIF_PROVIDER, filename="tenor-cat", locator=GIF_URL)
            )
        pipeline = make_pipeline(serve()[0])

        deleted = await pipeline.delete_by_filename("tenor-cat", is_gif_provider=True)
        await pipeline.drain()

        assert len(deleted) == 2
        assert await store.count_media() == 0

    @pytest.mark.asyncio
    async def test_kind_must_match(self, make_pipeline, store: GalleryStore, make_record) -> None:
        await store.add_media(make_record(kind=SourceKind.GIF_PROVIDER, filename="tenor-cat"))
        pipeline = make_pipeline(serve()[0])

        with pytest.raises(NotFoundError):
            await pipeline.delete_by_filename("tenor-cat", is_gif_provider=False)

    @pytest.mark.asyncio
    async def test_missing_local_file_is_tolerated(
        self, make_pipeline, store: GalleryStore, make_record, tmp_path: Path
    ) -> None:
        record = make_record(locator=str(tmp_path / "gone.png"), filename="gone.png")
        await store.add_media(record)
        pipeline = make_pipeline(serve()[0])

        await pipeline.delete_by_filename("gone.png", is_gif_provider=False)
        await pipeline.drain()

        assert await store.get_media(record.id) is None

    @pytest.mark.asyncio
    async def test_repeated_delete_counts_once(
        self, make_pipeline, aggregator: StatsAggregator
    ) -> None:
        pipeline = make_pipeline(serve()[0])
        first = await pipeline.ingest(attachment(), AUTHOR)
        second = await pipeline.ingest(attachment(), AUTHOR)
        await pipeline.drain()

        assert await pipeline.delete_record(first) is True
        assert await pipeline.delete_record(first) is False
        await pipeline.drain()

        stats = await aggregator.get_user_stats("u1")
        assert stats.upload_count == 1
        assert Path(second.locator).exists()
