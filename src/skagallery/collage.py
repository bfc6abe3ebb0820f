"""3x3 image collages with Pillow."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from skagallery.logging import get_logger
from skagallery.models import MediaRecord
from skagallery.store import NotFoundError

log = get_logger("collage")

GRID = 3
CELL_SIZE = 300
BACKGROUND = (255, 255, 255)
PLACEHOLDER = (240, 240, 240)


async def load_image_bytes(record: MediaRecord, client: httpx.AsyncClient) -> bytes | None:
    """Read a record's image from local storage or its remote URL.

    Returns:
        The bytes, or None if they couldn't be read.
    """
    if record.is_local:
        path = Path(record.locator)
        if not path.exists():
            log.warning("collage_local_file_missing", path=record.locator)
            return None
        return path.read_bytes()

    try:
        response = await client.get(record.locator)
        response.raise_for_status()
    except httpx.HTTPError as e:
        log.warning("collage_fetch_failed", url=record.locator, error=str(e))
        return None
    return response.content


def compose_grid(images: list[bytes], cell_size: int = CELL_SIZE) -> bytes:
    """Cover-crop each image into a cell of a 3x3 PNG grid.

    Unreadable images are skipped; empty cells get a light gray placeholder.

    Raises:
        NotFoundError: If none of the images could be decoded.
    """
    cells: list[Image.Image] = []
    for data in images[: GRID * GRID]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                cells.append(
                    ImageOps.fit(img.convert("RGB"), (cell_size, cell_size), centering=(0.5, 0.5))
                )
        except (UnidentifiedImageError, OSError) as e:
            log.warning("collage_image_unreadable", error=str(e))

    if not cells:
        raise NotFoundError("No images could be processed for the collage")

    canvas = Image.new("RGB", (cell_size * GRID, cell_size * GRID), BACKGROUND)
    placeholder = Image.new("RGB", (cell_size, cell_size), PLACEHOLDER)
    for i in range(GRID * GRID):
        row, col = divmod(i, GRID)
        canvas.paste(cells[i] if i < len(cells) else placeholder, (col * cell_size, row * cell_size))

    output = io.BytesIO()
    canvas.save(output, "PNG")
    return output.getvalue()


async def create_collage(
    records: list[MediaRecord],
    cell_size: int = CELL_SIZE,
    client: httpx.AsyncClient | None = None,
) -> bytes:
    """Build a PNG collage from up to nine records.

    Args:
        records: Records to include, in grid order.
        cell_size: Edge length of each cell in pixels.
        client: HTTP client for remote images; a short-lived one is used if
            not given.

    Returns:
        PNG bytes.

    Raises:
        NotFoundError: If no image could be loaded.
    """
    records = records[: GRID * GRID]
    if client is None:
        async with httpx.AsyncClient(timeout=10.0, follow_redirects=True) as own_client:
            images = [await load_image_bytes(r, own_client) for r in records]
    else:
        images = [await load_image_bytes(r, client) for r in records]

    loaded = [data for data in images if data is not None]
    log.info("collage_images_loaded", requested=len(records), loaded=len(loaded))
    if not loaded:
        raise NotFoundError("No images could be loaded for the collage")

    return await asyncio.to_thread(compose_grid, loaded, cell_size)
