"""Read-side queries behind the gallery commands."""

from __future__ import annotations

import random

from skagallery.models import MediaFilter, MediaRecord, SourceKind
from skagallery.store import GalleryStore, NotFoundError
from skagallery.tagging import REACT_TAG

KIND_FILTERS: dict[MediaFilter, list[SourceKind]] = {
    MediaFilter.GIF: [SourceKind.GIF_PROVIDER],
    MediaFilter.IMAGE: [SourceKind.ATTACHMENT, SourceKind.GENERIC_URL],
}


def is_static_image(record: MediaRecord) -> bool:
    """True for records that can be composited into a still collage."""
    if record.is_gif_provider:
        return False
    if record.filename.lower().endswith(".gif"):
        return False
    return "gif" not in (record.content_type or "").lower()


class GalleryQueries:
    """Count, random pick, reaction pool and collage selection.

    Attributes:
        store: Gallery document store.
    """

    def __init__(self, store: GalleryStore) -> None:
        self.store = store

    async def count(self) -> int:
        return await self.store.count_media()

    async def random_media(self, kind: MediaFilter | None = None) -> MediaRecord:
        """Pick a random archived item, optionally only images or gifs.

        Raises:
            NotFoundError: If nothing matches.
        """
        return await self._pick(kind=kind)

    async def random_reaction(self, kind: MediaFilter | None = None) -> MediaRecord:
        """Pick a random item tagged ``react``.

        Raises:
            NotFoundError: If nothing tagged matches.
        """
        return await self._pick(kind=kind, tag=REACT_TAG)

    async def _pick(self, kind: MediaFilter | None, tag: str | None = None) -> MediaRecord:
        source_kinds = KIND_FILTERS[kind] if kind else None
        records = await self.store.sample_media(1, tag=tag, source_kinds=source_kinds)
        if not records:
            raise NotFoundError("No matching media in the gallery")
        return records[0]

    async def collage_candidates(self, user_id: str, limit: int = 9) -> list[MediaRecord]:
        """Up to ``limit`` random static images uploaded by a user.

        Raises:
            NotFoundError: If the user has no static images.
        """
        records = [r for r in await self.store.find_media(author_id=user_id) if is_static_image(r)]
        if not records:
            raise NotFoundError(f"No images from user {user_id}")
        random.shuffle(records)
        return records[:limit]
