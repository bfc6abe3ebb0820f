"""Pytest configuration and shared fixtures."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from skagallery.config import Config, StatsConfig
from skagallery.database import create_tables, get_engine
from skagallery.models import (
    AttachmentRecord,
    Author,
    GifProviderRecord,
    SourceKind,
    UrlRecord,
)
from skagallery.stats import StatsAggregator
from skagallery.store import GalleryStore


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path):
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with temp database and media directory."""
    return Config(
        data_dir=tmp_path,
        log_level="INFO",
        stats=StatsConfig(debounce_seconds=0.01, refresh_cron=None),
    )


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine with all tables."""
    eng = get_engine(test_config)
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> GalleryStore:
    return GalleryStore(engine)


@pytest.fixture
def aggregator(store: GalleryStore, test_config: Config) -> StatsAggregator:
    return StatsAggregator(store, test_config)


@pytest.fixture
def make_record():
    """Factory for media records.

    Defaults to a 1000-byte PNG attachment by author ``u1`` posted at
    2025-03-05 12:00 UTC.
    """

    def _make(
        kind: SourceKind = SourceKind.ATTACHMENT,
        author_id: str | None = "u1",
        filename: str = "photo.png",
        locator: str | None = None,
        size_bytes: int | None = 1000,
        content_type: str | None = "image/png",
        created_at: datetime | None = None,
        **kwargs,
    ):
        record_cls = {
            SourceKind.ATTACHMENT: AttachmentRecord,
            SourceKind.GENERIC_URL: UrlRecord,
            SourceKind.GIF_PROVIDER: GifProviderRecord,
        }[kind]
        return record_cls(
            locator=locator or f"https://cdn.example.com/{filename}",
            filename=filename,
            size_bytes=size_bytes,
            content_type=content_type,
            author=Author(id=author_id, username=f"user-{author_id}") if author_id else None,
            created_at=created_at or datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc),
            **kwargs,
        )

    return _make
