"""Shared fixtures: fake HTTP responses and in-memory images."""

import io

import pytest
import requests
from PIL import Image


class FakeResponse:
    def __init__(self, content: bytes = b"", status_code: int = 200, headers=None, json_data=None, text=None):
        self.content = content
        self.status_code = status_code
        self.headers = headers or {}
        self._json_data = json_data
        self.text = text if text is not None else content.decode("latin-1")

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def json(self):
        if self._json_data is None:
            raise ValueError("no json body")
        return self._json_data


def image_bytes(color=(255, 0, 0), size=(64, 48), image_format="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return image_bytes()
