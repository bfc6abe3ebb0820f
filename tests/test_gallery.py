"""Tests for gallery read queries."""

import pytest

from skagallery.gallery import GalleryQueries, is_static_image
from skagallery.models import MediaFilter, SourceKind
from skagallery.store import GalleryStore, NotFoundError
from skagallery.tagging import REACT_TAG


@pytest.fixture
def gallery(store: GalleryStore) -> GalleryQueries:
    return GalleryQueries(store)


def test_is_static_image(make_record) -> None:
    assert is_static_image(make_record())
    assert not is_static_image(make_record(kind=SourceKind.GIF_PROVIDER, filename="tenor-x"))
    assert not is_static_image(make_record(filename="dance.GIF"))
    assert not is_static_image(make_record(filename="dance", content_type="image/gif"))


class TestRandom:
    @pytest.mark.asyncio
    async def test_count(self, gallery: GalleryQueries, store: GalleryStore, make_record) -> None:
        assert await gallery.count() == 0
        await store.add_media(make_record())
        assert await gallery.count() == 1

    @pytest.mark.asyncio
    async def test_empty_gallery(self, gallery: GalleryQueries) -> None:
        with pytest.raises(NotFoundError):
            await gallery.random_media()

    @pytest.mark.asyncio
    async def test_filters_by_kind(
        self, gallery: GalleryQueries, store: GalleryStore, make_record
    ) -> None:
        image = make_record(filename="a.png")
        gif = make_record(kind=SourceKind.GIF_PROVIDER, filename="tenor-a")
        await store.add_media(image)
        await store.add_media(gif)

        for _ in range(5):
            assert (await gallery.random_media(MediaFilter.GIF)).id == gif.id
            assert (await gallery.random_media(MediaFilter.IMAGE)).id == image.id

    @pytest.mark.asyncio
    async def test_reaction_pool(
        self, gallery: GalleryQueries, store: GalleryStore, make_record
    ) -> None:
        tagged = make_record(filename="t.png", tags=[REACT_TAG])
        await store.add_media(tagged)
        await store.add_media(make_record(filename="u.png"))

        for _ in range(5):
            assert (await gallery.random_reaction()).id == tagged.id

        with pytest.raises(NotFoundError):
            await gallery.random_reaction(MediaFilter.GIF)


class TestCollageCandidates:
    @pytest.mark.asyncio
    async def test_only_static_images_from_user(
        self, gallery: GalleryQueries, store: GalleryStore, make_record
    ) -> None:
        mine = make_record(filename="mine.png")
        await store.add_media(mine)
        await store.add_media(make_record(filename="anim.gif", content_type="image/gif"))
        await store.add_media(make_record(author_id="other", filename="theirs.png"))

        candidates = await gallery.collage_candidates("u1")

        assert [r.id for r in candidates] == [mine.id]

    @pytest.mark.asyncio
    async def test_limited_to_grid(
        self, gallery: GalleryQueries, store: GalleryStore, make_record
    ) -> None:
        for i in range(12):
            await store.add_media(make_record(filename=f"{i}.png"))

        candidates = await gallery.collage_candidates("u1")

        assert len(candidates) == 9
        assert len({r.id for r in candidates}) == 9

    @pytest.mark.asyncio
    async def test_no_images(self, gallery: GalleryQueries, store: GalleryStore, make_record) -> None:
        await store.add_media(make_record(kind=SourceKind.GIF_PROVIDER, filename="tenor-a"))

        with pytest.raises(NotFoundError):
            await gallery.collage_candidates("u1")
