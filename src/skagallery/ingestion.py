"""Media ingestion for the gallery channel.

Every attachment or URL posted to the gallery becomes one MediaRecord. The
source kind decides how it is archived:
- gif-provider links are stored by URL and deduplicated by filename
- attachments and other image URLs are downloaded into local storage under a
  collision-free filename; if the download keeps failing, the record points
  at the remote URL instead
"""

from __future__ import annotations

import asyncio
import os
import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import httpx

from skagallery.logging import get_logger
from skagallery.models import (
    RECORD_CLASSES,
    SHARED_FILENAME_KINDS,
    UNIQUE_FILENAME_KINDS,
    Author,
    GifProviderRecord,
    MediaRecord,
    MediaSource,
    SourceKind,
    ensure_utc,
    generate_id,
)
from skagallery.stats import StatsAggregator
from skagallery.store import GalleryError, GalleryStore, NotFoundError

if TYPE_CHECKING:
    from skagallery.config import Config

log = get_logger("ingestion")

USER_AGENT = "SkaGallery/1.0 (Discord gallery archiver)"

# Image URLs in message text, optionally followed by a query string
IMAGE_URL_PATTERN = r"https?://[^\s<>\"']+?\.(?:jpe?g|png|gif|webp)(?:\?[^\s<>\"']*)?"


class DuplicateError(GalleryError):
    """A gif-provider link with the same filename is already archived."""


class DownloadError(GalleryError):
    """Fetching a media URL failed.

    Attributes:
        status_code: HTTP status of the final attempt, None for transport errors.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def is_retryable_status(status_code: int) -> bool:
    """403 and 429 are often transient on CDNs, as are server errors."""
    return status_code in (403, 429) or status_code >= 500


def url_basename(url: str) -> str:
    """Last path segment of a URL, percent-decoded."""
    path = unquote(urlparse(url).path).rstrip("/")
    return path.rsplit("/", 1)[-1]


def with_suffix_number(filename: str, n: int) -> str:
    """``photo.png`` -> ``photo-<n>.png``."""
    stem, ext = os.path.splitext(filename)
    return f"{stem}-{n}{ext}"


class IngestionPipeline:
    """Turns inbound media into MediaRecords.

    Attributes:
        store: Gallery document store.
        stats: StatsAggregator notified of uploads and deletes.
        config: Application configuration.
        media_dir: Local storage directory for downloads.
    """

    def __init__(
        self,
        store: GalleryStore,
        stats: StatsAggregator,
        config: "Config",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Gallery document store.
            stats: StatsAggregator to notify.
            config: Application configuration.
            http_client: Client for downloads. One is created (and owned) if
                not given.
        """
        self.store = store
        self.stats = stats
        self.config = config
        self.media_dir: Path = config.media_path

        self._provider_re = re.compile(config.gif_provider.url_pattern, re.IGNORECASE)
        self._media_url_re = re.compile(
            f"{config.gif_provider.url_pattern}|{IMAGE_URL_PATTERN}",
            re.IGNORECASE,
        )
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.ingestion.timeout_seconds,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if the pipeline created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Classification
    # =========================================================================

    def is_gif_provider_url(self, url: str) -> bool:
        return self._provider_re.match(url) is not None

    def classify(self, source: MediaSource) -> SourceKind:
        """Decide the source kind of an inbound item."""
        if self.is_gif_provider_url(source.url):
            return SourceKind.GIF_PROVIDER
        if source.is_attachment:
            return SourceKind.ATTACHMENT
        return SourceKind.GENERIC_URL

    def extract_media_urls(self, content: str) -> list[str]:
        """Find image and gif-provider URLs in message text, in order, once each."""
        urls: list[str] = []
        for match in self._media_url_re.finditer(content or ""):
            url = match.group(0)
            if url not in urls:
                urls.append(url)
        return urls

    def gif_filename(self, url: str) -> str:
        """Stable filename for a gif-provider link: ``<provider>-<slug>``."""
        return f"{self.config.gif_provider.name}-{url_basename(url)}"

    def candidate_filename(self, source: MediaSource) -> str:
        """Filename to store a download under, before collision handling."""
        name = source.filename or url_basename(source.url)
        # Never let a name escape the media directory
        name = Path(name).name
        return name or f"{generate_id()}.bin"

    # =========================================================================
    # Filenames
    # =========================================================================

    async def _filename_taken(self, filename: str) -> bool:
        if (self.media_dir / filename).exists():
            return True
        return await self.store.filename_exists(filename, unique_only=True)

    async def resolve_unique_filename(self, candidate: str) -> str:
        """First of ``name``, ``name-1``, ``name-2``, ... not used locally.

        A name is used if the file exists in local storage or a stored
        local-download record carries it.
        """
        filename = candidate
        n = 0
        while await self._filename_taken(filename):
            n += 1
            filename = with_suffix_number(candidate, n)
        return filename

    async def _persist(self, candidate: str, data: bytes) -> tuple[str, Path]:
        """Write bytes under a unique filename.

        The file is created exclusively, so a name claimed by a concurrent
        ingest between resolving and writing is resolved again.
        """
        self.media_dir.mkdir(parents=True, exist_ok=True)
        while True:
            filename = await self.resolve_unique_filename(candidate)
            path = self.media_dir / filename
            try:
                with open(path, "xb") as f:
                    f.write(data)
            except FileExistsError:
                continue
            return filename, path

    # =========================================================================
    # Download
    # =========================================================================

    async def download(self, url: str) -> bytes:
        """Fetch a URL with bounded retries.

        Raises:
            DownloadError: On a non-retryable status, or once attempts run out.
        """
        settings = self.config.ingestion
        client = self._get_client()
        last_error: DownloadError | None = None

        for attempt in range(1, settings.max_attempts + 1):
            try:
                response = await client.get(url, timeout=settings.timeout_seconds)
            except httpx.TransportError as e:
                last_error = DownloadError(f"Request to {url} failed: {e}")
                delay = settings.retry_delay_seconds * attempt
            else:
                if response.is_success:
                    return response.content

                status = response.status_code
                last_error = DownloadError(f"HTTP {status} fetching {url}", status_code=status)
                if not is_retryable_status(status):
                    raise last_error
                base = (
                    settings.rate_limit_delay_seconds
                    if status == 429
                    else settings.retry_delay_seconds
                )
                delay = base * attempt

            log.warning(
                "download_attempt_failed",
                url=url,
                attempt=attempt,
                max_attempts=settings.max_attempts,
                status=last_error.status_code,
                error=str(last_error),
            )
            if attempt < settings.max_attempts:
                await asyncio.sleep(delay)

        raise last_error

    # =========================================================================
    # Ingest
    # =========================================================================

    async def ingest(
        self,
        source: MediaSource,
        author: Author | None,
        message_id: str | None = None,
        message_link: str | None = None,
        created_at: datetime | None = None,
    ) -> MediaRecord:
        """Archive one attachment or URL.

        Args:
            source: The inbound item.
            author: Who posted it.
            message_id: Originating message id.
            message_link: Jump link to the originating message.
            created_at: When the item was posted; now if not given. Backfill
                passes the original message time.

        Returns:
            The stored record.

        Raises:
            DuplicateError: If a gif-provider link is already archived.
        """
        kind = self.classify(source)
        common = dict(
            size_bytes=source.size_bytes,
            content_type=source.content_type,
            width=source.width,
            height=source.height,
            author=author,
            source_message_id=message_id,
            source_message_link=message_link,
        )
        if created_at is not None:
            common["created_at"] = ensure_utc(created_at)

        if kind == SourceKind.GIF_PROVIDER:
            filename = self.gif_filename(source.url)
            existing = await self.store.find_media(
                filename=filename, source_kinds=[SourceKind.GIF_PROVIDER]
            )
            if existing:
                raise DuplicateError(f"{filename} is already in the gallery")
            record = GifProviderRecord(locator=source.url, filename=filename, **common)
        else:
            candidate = self.candidate_filename(source)
            try:
                data = await self.download(source.url)
            except DownloadError as e:
                log.warning(
                    "download_failed_storing_url",
                    url=source.url,
                    status=e.status_code,
                    error=str(e),
                )
                filename = await self.resolve_unique_filename(candidate)
                locator = source.url
            else:
                filename, path = await self._persist(candidate, data)
                locator = str(path)
                if common["size_bytes"] is None:
                    common["size_bytes"] = len(data)
            record = RECORD_CLASSES[kind](locator=locator, filename=filename, **common)

        await self.store.add_media(record)
        await self.store.advance_watermark(record.created_at)
        self.stats.notify_upload(record)

        log.info(
            "media_ingested",
            media_id=record.id,
            filename=record.filename,
            kind=record.source_kind.value,
            local=record.is_local,
            author_id=author.id if author else None,
        )
        return record

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete_by_filename(self, filename: str, is_gif_provider: bool) -> list[MediaRecord]:
        """Delete archived media by filename.

        Gif-provider filenames may have historical duplicates, all of which
        are removed. Local-download filenames identify one record; its backing
        file is removed too.

        Returns:
            The deleted records.

        Raises:
            NotFoundError: If nothing matches.
        """
        kinds = SHARED_FILENAME_KINDS if is_gif_provider else UNIQUE_FILENAME_KINDS
        records = await self.store.find_media(filename=filename, source_kinds=kinds)
        if not records:
            raise NotFoundError(f"No media named {filename}")

        if not is_gif_provider:
            if len(records) > 1:
                log.warning("duplicate_local_filename", filename=filename, count=len(records))
            records = records[:1]

        deleted = [record for record in records if await self.delete_record(record)]
        if not deleted:
            raise NotFoundError(f"No media named {filename}")
        return deleted

    async def delete_record(self, record: MediaRecord) -> bool:
        """Remove one record (and its local file) and notify stats.

        Returns:
            False if the record was already gone; nothing else is touched then.
        """
        if not await self.store.delete_media(record.id):
            log.info("media_already_deleted", media_id=record.id, filename=record.filename)
            return False
        if record.is_local:
            self._remove_local_file(record)
        self.stats.notify_delete(record)
        log.info(
            "media_deleted",
            media_id=record.id,
            filename=record.filename,
            kind=record.source_kind.value,
        )
        return True

    def _remove_local_file(self, record: MediaRecord) -> None:
        try:
            Path(record.locator).unlink()
        except FileNotFoundError:
            log.debug("local_file_already_gone", path=record.locator)
        except OSError as e:
            log.warning("local_file_delete_failed", path=record.locator, error=str(e))

    async def drain(self) -> None:
        """Wait for stats hooks fired by ingests and deletes."""
        await self.stats.flush()
