"""
Thumbnail grid for multi-choice ("picker") results.

Fetches every candidate's thumbnail, lays the survivors out in a numbered grid
and writes the grid as a single image the bot can send next to its
selection buttons.
"""

import asyncio
import dataclasses
import io
import logging
import os
import time
import uuid
from pathlib import Path

import requests
from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "cobaltfox"


# -------------------------
# Types
# -------------------------
@dataclasses.dataclass(frozen=True)
class GridConfig:
    cell_size: int = 100
    columns: int = 3
    spacing: int = 10
    label_height: int = 25
    label_font_size: int = 24
    background: tuple[int, int, int] = (69, 69, 69)
    label_color: tuple[int, int, int] = (255, 255, 255)
    output_dir: Path = Path("downloads")
    image_format: str = "JPEG"
    fetch_timeout: float = 10.0
    max_concurrent_fetches: int = 6
    max_thumbnail_bytes: int = 10 * 1024 * 1024
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        for name in ("cell_size", "columns", "label_height", "max_concurrent_fetches"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive")
        if self.spacing < 0:
            raise ValueError("spacing must not be negative")

    @property
    def pitch(self) -> int:
        return self.cell_size + self.spacing

    @property
    def extension(self) -> str:
        return "jpg" if self.image_format.upper() == "JPEG" else self.image_format.lower()


@dataclasses.dataclass(frozen=True)
class PickerItem:
    type: str
    url: str
    thumb: str | None = None


@dataclasses.dataclass(frozen=True)
class GridCell:
    index: int
    x: int
    y: int

    @property
    def label(self) -> str:
        return str(self.index + 1)


class GridBuildError(RuntimeError):
    pass


class EmptyGridError(GridBuildError):
    pass


class CompositeError(GridBuildError):
    pass


class PickerSelectionError(LookupError):
    pass


def select_choice(choices: list[PickerItem], label: int) -> PickerItem:
    """Return the item drawn under the 1-based ``label``."""
    if not 1 <= label <= len(choices):
        raise PickerSelectionError(f"no choice labelled {label}")
    return choices[label - 1]


@dataclasses.dataclass
class PickerPreview:
    """A rendered grid plus the items its labels refer to.

    ``choices[k]`` is the item drawn under label ``k + 1``. The caller owns
    ``path`` and should call :meth:`discard` once the image has been sent.
    """

    path: Path
    choices: list[PickerItem]

    def choose(self, label: int) -> PickerItem:
        return select_choice(self.choices, label)

    def discard(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


# -------------------------
# Thumbnail Fetcher
# -------------------------
def _fetch_thumbnail_sync(thumb_url: str, config: GridConfig) -> Image.Image:
    headers = {"User-Agent": config.user_agent}
    # requests only bounds each socket read; the deadline bounds the whole fetch.
    deadline = time.monotonic() + config.fetch_timeout
    with requests.get(thumb_url, headers=headers, timeout=config.fetch_timeout, stream=True) as response:
        response.raise_for_status()
        buffer = io.BytesIO()
        for chunk in response.iter_content(chunk_size=64 * 1024):
            if time.monotonic() > deadline:
                raise TimeoutError(f"thumbnail fetch exceeded {config.fetch_timeout}s")
            if not chunk:
                continue
            buffer.write(chunk)
            if buffer.tell() > config.max_thumbnail_bytes:
                raise ValueError("thumbnail is too large")

    buffer.seek(0)
    with Image.open(buffer) as image:
        image.load()
        return image.convert("RGB").resize((config.cell_size, config.cell_size))


async def fetch_thumbnails(items: list[PickerItem], config: GridConfig) -> list[Image.Image | None]:
    """Fetch and normalize every item's thumbnail.

    The result lines up with ``items``; a thumbnail that could not be
    retrieved or decoded is ``None`` in its position.
    """
    semaphore = asyncio.Semaphore(config.max_concurrent_fetches)

    async def _fetch_one(item: PickerItem) -> Image.Image | None:
        if not item.thumb:
            logger.warning("Picker item has no thumbnail: url=%s", item.url)
            return None
        async with semaphore:
            try:
                return await asyncio.to_thread(_fetch_thumbnail_sync, item.thumb, config)
            except Exception as fetch_err:
                logger.warning("Failed to process thumbnail %s: %s", item.thumb, fetch_err)
                return None

    return list(await asyncio.gather(*(_fetch_one(item) for item in items)))


# -------------------------
# Grid Compositor
# -------------------------
def grid_size(count: int, config: GridConfig) -> tuple[int, int]:
    if count < 1:
        raise EmptyGridError("cannot size a grid without thumbnails")
    rows = -(-count // config.columns)
    width = config.columns * config.cell_size + (config.columns - 1) * config.spacing
    height = rows * config.cell_size + (rows - 1) * config.spacing
    return width, height


def layout_cells(count: int, config: GridConfig) -> list[GridCell]:
    if count < 1:
        raise EmptyGridError("cannot lay out a grid without thumbnails")
    return [
        GridCell(
            index=index,
            x=(index % config.columns) * config.pitch,
            y=(index // config.columns) * config.pitch,
        )
        for index in range(count)
    ]


def _render_label(text: str, config: GridConfig) -> Image.Image:
    band = Image.new("RGBA", (config.cell_size, config.label_height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(band)
    font = ImageFont.load_default(size=config.label_font_size)
    draw.text(
        (round(config.cell_size * 0.02), config.label_height // 2),
        text,
        fill=config.label_color,
        font=font,
        anchor="lm",
    )
    return band


def compose_grid(thumbnails: list[Image.Image], config: GridConfig) -> Image.Image:
    cells = layout_cells(len(thumbnails), config)
    canvas = Image.new("RGB", grid_size(len(thumbnails), config), config.background)

    # Labels go on after every thumbnail so no cell can cover one.
    for cell, thumbnail in zip(cells, thumbnails):
        canvas.paste(thumbnail, (cell.x, cell.y))
    for cell in cells:
        label = _render_label(cell.label, config)
        canvas.paste(label, (cell.x, cell.y), label)
    return canvas


def _unique_grid_path(config: GridConfig) -> Path:
    filename = f"grid-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.{config.extension}"
    return (config.output_dir / filename).resolve()


def _write_grid_sync(thumbnails: list[Image.Image], config: GridConfig) -> Path:
    destination = _unique_grid_path(config)
    try:
        canvas = compose_grid(thumbnails, config)
        config.output_dir.mkdir(parents=True, exist_ok=True)
        with destination.open("wb") as output:
            canvas.save(output, format=config.image_format)
            output.flush()
            os.fsync(output.fileno())
    except Exception:
        destination.unlink(missing_ok=True)
        raise
    return destination


async def build_grid(thumbnails: list[Image.Image], config: GridConfig) -> Path:
    """Render the compacted thumbnails into one image file.

    Returns the absolute path once the file is fully written. Raises
    EmptyGridError for an empty list and CompositeError if rendering or
    writing fails.
    """
    if not thumbnails:
        raise EmptyGridError("no thumbnails to build a grid from")
    try:
        path = await asyncio.to_thread(_write_grid_sync, thumbnails, config)
    except Exception as err:
        raise CompositeError(f"Error creating grid: {err}") from err
    logger.info("Thumbnail grid created: path=%s cells=%s", path, len(thumbnails))
    return path


async def build_picker_preview(items: list[PickerItem], config: GridConfig) -> PickerPreview:
    thumbnails = await fetch_thumbnails(items, config)
    choices = [item for item, thumbnail in zip(items, thumbnails) if thumbnail is not None]
    survivors = [thumbnail for thumbnail in thumbnails if thumbnail is not None]
    if len(survivors) < len(items):
        logger.info("Dropped %s of %s picker thumbnails", len(items) - len(survivors), len(items))
    if not survivors:
        raise EmptyGridError("every thumbnail fetch failed")
    path = await build_grid(survivors, config)
    return PickerPreview(path=path, choices=choices)
