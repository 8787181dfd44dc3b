import threading
import time
from pathlib import Path

import pytest
import requests
from PIL import Image

import picker_grid
from conftest import FakeResponse, image_bytes
from picker_grid import (
    CompositeError,
    EmptyGridError,
    GridConfig,
    PickerItem,
    PickerSelectionError,
    build_grid,
    build_picker_preview,
    compose_grid,
    fetch_thumbnails,
    grid_size,
    layout_cells,
)

GRAY = (69, 69, 69)


def _items(count: int) -> list[PickerItem]:
    return [
        PickerItem(type="photo", url=f"https://media.example/{i}.jpg", thumb=f"https://thumbs.example/{i}.jpg")
        for i in range(count)
    ]


def _solid(color, size=100) -> Image.Image:
    return Image.new("RGB", (size, size), color)


def _serve(monkeypatch, payloads: dict[str, object]) -> None:
    def _fake_get(url, headers=None, timeout=None, stream=False):
        payload = payloads[url]
        if isinstance(payload, Exception):
            raise payload
        return payload

    monkeypatch.setattr(picker_grid.requests, "get", _fake_get)


@pytest.mark.parametrize("count", range(1, 10))
def test_grid_width_is_fixed_and_height_follows_rows(count: int) -> None:
    config = GridConfig()
    rows = -(-count // 3)

    assert grid_size(count, config) == (320, rows * 100 + (rows - 1) * 10)


def test_single_cell_sits_at_origin() -> None:
    cells = layout_cells(1, GridConfig())

    assert [(cell.x, cell.y, cell.label) for cell in cells] == [(0, 0, "1")]
    assert grid_size(1, GridConfig()) == (320, 100)


def test_four_cells_wrap_to_second_row() -> None:
    cells = layout_cells(4, GridConfig())

    assert [(cell.x, cell.y) for cell in cells] == [(0, 0), (110, 0), (220, 0), (0, 110)]


def test_labels_are_one_based_without_padding() -> None:
    cells = layout_cells(9, GridConfig())

    assert [cell.label for cell in cells] == [str(n) for n in range(1, 10)]


def test_layout_rejects_empty_grid() -> None:
    with pytest.raises(EmptyGridError):
        layout_cells(0, GridConfig())
    with pytest.raises(EmptyGridError):
        grid_size(0, GridConfig())


def test_layout_follows_custom_config() -> None:
    config = GridConfig(cell_size=10, columns=2, spacing=1)

    assert [(cell.x, cell.y) for cell in layout_cells(3, config)] == [(0, 0), (11, 0), (0, 11)]
    assert grid_size(3, config) == (21, 21)


@pytest.mark.parametrize(
    "kwargs",
    [{"cell_size": 0}, {"columns": 0}, {"spacing": -1}, {"label_height": 0}, {"max_concurrent_fetches": 0}],
)
def test_config_rejects_invalid_shapes(kwargs) -> None:
    with pytest.raises(ValueError):
        GridConfig(**kwargs)


def test_compose_places_thumbnails_and_leaves_gaps_gray() -> None:
    colors = [(255, 0, 0), (0, 255, 0), (0, 0, 255), (255, 255, 0)]
    canvas = compose_grid([_solid(color) for color in colors], GridConfig())

    assert canvas.size == (320, 210)
    assert canvas.mode == "RGB"
    # below the label band of each cell
    assert canvas.getpixel((50, 80)) == (255, 0, 0)
    assert canvas.getpixel((160, 80)) == (0, 255, 0)
    assert canvas.getpixel((270, 80)) == (0, 0, 255)
    assert canvas.getpixel((50, 190)) == (255, 255, 0)
    # spacing and the unused cells of the last row
    assert canvas.getpixel((105, 50)) == GRAY
    assert canvas.getpixel((50, 105)) == GRAY
    assert canvas.getpixel((160, 190)) == GRAY
    assert canvas.getpixel((270, 190)) == GRAY


def test_compose_draws_labels_above_thumbnails() -> None:
    canvas = compose_grid([_solid((0, 0, 0)), _solid((0, 0, 0))], GridConfig())

    for origin_x in (0, 110):
        band = canvas.crop((origin_x, 0, origin_x + 100, 25))
        assert any(pixel[0] > 200 for pixel in band.getdata())
    # the lower part of a thumbnail is untouched by its label
    lower = canvas.crop((0, 30, 100, 100))
    assert all(pixel == (0, 0, 0) for pixel in lower.getdata())


@pytest.mark.asyncio
async def test_fetch_keeps_order_and_marks_failures(monkeypatch) -> None:
    items = _items(4)
    _serve(
        monkeypatch,
        {
            items[0].thumb: FakeResponse(image_bytes((255, 0, 0), size=(300, 120))),
            items[1].thumb: requests.ConnectionError("boom"),
            items[2].thumb: FakeResponse(b"<html>not an image</html>"),
            items[3].thumb: FakeResponse(image_bytes((0, 0, 255), image_format="JPEG")),
        },
    )

    thumbnails = await fetch_thumbnails(items, GridConfig())

    assert len(thumbnails) == 4
    assert thumbnails[1] is None
    assert thumbnails[2] is None
    assert thumbnails[0].size == (100, 100)
    assert thumbnails[0].mode == "RGB"
    assert thumbnails[0].getpixel((50, 50)) == (255, 0, 0)
    assert thumbnails[3].size == (100, 100)


@pytest.mark.asyncio
async def test_fetch_treats_http_errors_and_missing_thumbs_as_failures(monkeypatch) -> None:
    items = [
        PickerItem(type="photo", url="https://media.example/a.jpg", thumb="https://thumbs.example/404.jpg"),
        PickerItem(type="video", url="https://media.example/b.mp4", thumb=None),
    ]
    _serve(monkeypatch, {items[0].thumb: FakeResponse(b"missing", status_code=404)})

    assert await fetch_thumbnails(items, GridConfig()) == [None, None]


@pytest.mark.asyncio
async def test_fetch_rejects_oversized_thumbnails(monkeypatch) -> None:
    items = _items(1)
    _serve(monkeypatch, {items[0].thumb: FakeResponse(image_bytes(size=(200, 200)))})

    assert await fetch_thumbnails(items, GridConfig(max_thumbnail_bytes=16)) == [None]


@pytest.mark.asyncio
async def test_fetch_passes_timeout(monkeypatch, png_bytes) -> None:
    seen = {}

    def _fake_get(url, headers=None, timeout=None, stream=False):
        seen["timeout"] = timeout
        seen["headers"] = headers
        return FakeResponse(png_bytes)

    monkeypatch.setattr(picker_grid.requests, "get", _fake_get)

    await fetch_thumbnails(_items(1), GridConfig(fetch_timeout=2.5, user_agent="test-agent"))

    assert seen == {"timeout": 2.5, "headers": {"User-Agent": "test-agent"}}


class _DripResponse(FakeResponse):
    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), 64):
            time.sleep(0.1)
            yield self.content[start : start + 64]


@pytest.mark.asyncio
async def test_fetch_gives_up_on_slow_drip_stream(monkeypatch) -> None:
    items = _items(1)
    _serve(monkeypatch, {items[0].thumb: _DripResponse(b"x" * 64 * 30)})

    started = time.monotonic()
    thumbnails = await fetch_thumbnails(items, GridConfig(fetch_timeout=0.3))
    elapsed = time.monotonic() - started

    assert thumbnails == [None]
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_fetch_concurrency_is_bounded(monkeypatch) -> None:
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def _slow_fetch(thumb_url, config):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.05)
        with lock:
            state["active"] -= 1
        return _solid((1, 2, 3), size=config.cell_size)

    monkeypatch.setattr(picker_grid, "_fetch_thumbnail_sync", _slow_fetch)

    thumbnails = await fetch_thumbnails(_items(6), GridConfig(max_concurrent_fetches=2))

    assert len(thumbnails) == 6
    assert all(thumbnail is not None for thumbnail in thumbnails)
    assert state["peak"] <= 2


@pytest.mark.asyncio
async def test_build_grid_writes_readable_image(tmp_path: Path) -> None:
    config = GridConfig(output_dir=tmp_path / "downloads")

    path = await build_grid([_solid((200, 10, 10)) for _ in range(4)], config)

    assert path.is_absolute()
    assert path.parent == (tmp_path / "downloads").resolve()
    assert path.suffix == ".jpg"
    assert path.stat().st_size > 0
    with Image.open(path) as image:
        assert image.format == "JPEG"
        assert image.size == (320, 210)


@pytest.mark.asyncio
async def test_build_grid_names_never_collide(tmp_path: Path) -> None:
    config = GridConfig(output_dir=tmp_path)
    thumbnails = [_solid((0, 0, 0))]

    paths = [await build_grid(thumbnails, config) for _ in range(5)]

    assert len(set(paths)) == 5


@pytest.mark.asyncio
async def test_build_grid_rejects_empty_input(tmp_path: Path) -> None:
    with pytest.raises(EmptyGridError):
        await build_grid([], GridConfig(output_dir=tmp_path))

    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_build_grid_surfaces_write_failures(tmp_path: Path) -> None:
    config = GridConfig(output_dir=tmp_path, image_format="NOT-A-FORMAT")

    with pytest.raises(CompositeError):
        await build_grid([_solid((0, 0, 0))], config)

    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_preview_skips_failed_thumbnail_without_gap(monkeypatch, tmp_path: Path) -> None:
    items = _items(5)
    payloads = {item.thumb: FakeResponse(image_bytes((10 * i, 0, 0))) for i, item in enumerate(items)}
    payloads[items[2].thumb] = requests.Timeout("slow")
    _serve(monkeypatch, payloads)
    config = GridConfig(output_dir=tmp_path, image_format="PNG")

    preview = await build_picker_preview(items, config)

    assert preview.choices == [items[0], items[1], items[3], items[4]]
    assert preview.choose(3) == items[3]
    with Image.open(preview.path) as image:
        assert image.size == (320, 210)
        # the fourth survivor wraps to the start of row two
        assert image.convert("RGB").getpixel((50, 190)) == (40, 0, 0)
        assert image.convert("RGB").getpixel((160, 190)) == GRAY

    with pytest.raises(PickerSelectionError):
        preview.choose(5)
    with pytest.raises(PickerSelectionError):
        preview.choose(0)

    preview.discard()
    assert not preview.path.exists()
    preview.discard()


@pytest.mark.asyncio
async def test_preview_fails_when_every_fetch_fails(monkeypatch, tmp_path: Path) -> None:
    items = _items(3)
    _serve(monkeypatch, {item.thumb: requests.ConnectionError("down") for item in items})

    with pytest.raises(EmptyGridError):
        await build_picker_preview(items, GridConfig(output_dir=tmp_path))

    assert list(tmp_path.iterdir()) == []
