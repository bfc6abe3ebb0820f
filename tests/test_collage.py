"""Tests for collage composition."""

import io
from pathlib import Path

import httpx
import pytest
from PIL import Image

from skagallery.collage import CELL_SIZE, PLACEHOLDER, compose_grid, create_collage
from skagallery.store import NotFoundError

RED = (255, 0, 0)
BLUE = (0, 0, 255)


def png_bytes(color: tuple[int, int, int], size: tuple[int, int] = (600, 400)) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", size, color).save(output, "PNG")
    return output.getvalue()


def open_png(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


class TestComposeGrid:
    def test_canvas_is_three_cells_square(self) -> None:
        image = open_png(compose_grid([png_bytes(RED)]))

        assert image.format == "PNG"
        assert image.size == (CELL_SIZE * 3, CELL_SIZE * 3)

    def test_cells_fill_row_major_with_placeholders(self) -> None:
        image = open_png(compose_grid([png_bytes(RED), png_bytes(BLUE, (100, 300))]))

        assert image.getpixel((CELL_SIZE // 2, CELL_SIZE // 2)) == RED
        assert image.getpixel((CELL_SIZE + CELL_SIZE // 2, CELL_SIZE // 2)) == BLUE
        assert image.getpixel((CELL_SIZE * 3 - 1, CELL_SIZE * 3 - 1)) == PLACEHOLDER

    def test_unreadable_images_are_skipped(self) -> None:
        image = open_png(compose_grid([b"not an image", png_bytes(BLUE)]))
        assert image.getpixel((10, 10)) == BLUE

    def test_nothing_decodable(self) -> None:
        with pytest.raises(NotFoundError):
            compose_grid([b"not an image"])

    def test_extra_images_ignored(self) -> None:
        image = open_png(compose_grid([png_bytes(RED)] * 12, cell_size=10))
        assert image.size == (30, 30)


class TestCreateCollage:
    @pytest.mark.asyncio
    async def test_local_and_remote_sources(self, make_record, tmp_path: Path) -> None:
        local = tmp_path / "red.png"
        local.write_bytes(png_bytes(RED))

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("blue.png"):
                return httpx.Response(200, content=png_bytes(BLUE))
            return httpx.Response(404)

        records = [
            make_record(locator=str(local), filename="red.png"),
            make_record(locator="https://cdn.example.com/blue.png", filename="blue.png"),
            make_record(locator="https://cdn.example.com/gone.png", filename="gone.png"),
            make_record(locator=str(tmp_path / "missing.png"), filename="missing.png"),
        ]

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            image = open_png(await create_collage(records, client=client))

        assert image.getpixel((10, 10)) == RED
        assert image.getpixel((CELL_SIZE + 10, 10)) == BLUE
        assert image.getpixel((CELL_SIZE * 2 + 10, 10)) == PLACEHOLDER

    @pytest.mark.asyncio
    async def test_no_loadable_images(self, make_record, tmp_path: Path) -> None:
        records = [make_record(locator=str(tmp_path / "missing.png"))]

        with pytest.raises(NotFoundError):
            await create_collage(records)
