"""
Client for a cobalt media-resolution instance and the file transfers around it.
"""

import dataclasses
import logging
from pathlib import Path
from urllib.parse import urlparse

import requests

from picker_grid import PickerItem

logger = logging.getLogger(__name__)

PHOTO_EXTENSIONS = {"jpg", "jpeg", "png", "webp"}
EMPTY_RESPONSE_CODE = "error.api.fetch.empty"


class CobaltError(RuntimeError):
    pass


class CobaltApiError(CobaltError):
    def __init__(self, code: str) -> None:
        super().__init__(f"cobalt error: {code}")
        self.code = code


class MediaTooLargeError(CobaltError):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(f"media is {size_bytes} bytes, limit is {limit_bytes}")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class UploadError(CobaltError):
    pass


@dataclasses.dataclass
class CobaltResult:
    status: str
    url: str | None = None
    filename: str | None = None
    type: str | None = None
    picker: list[PickerItem] = dataclasses.field(default_factory=list)
    audio: str | None = None

    @property
    def is_photo(self) -> bool:
        if self.type == "photo":
            return True
        return filename_is_photo(self.filename)

    @classmethod
    def from_json(cls, data: dict) -> "CobaltResult":
        picker = [
            PickerItem(type=entry.get("type") or "photo", url=entry.get("url") or "", thumb=entry.get("thumb"))
            for entry in data.get("picker") or []
            if isinstance(entry, dict)
        ]
        return cls(
            status=data.get("status") or "",
            url=data.get("url"),
            filename=data.get("filename"),
            type=data.get("type"),
            picker=picker,
            audio=data.get("audio"),
        )


def filename_is_photo(filename: str | None) -> bool:
    if not filename or "." not in filename:
        return False
    return filename.rsplit(".", 1)[-1].lower() in PHOTO_EXTENSIONS


def filename_from_url(url: str, fallback: str) -> str:
    name = Path(urlparse(url).path).name
    return name or fallback


def _error_code_from_response(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"http.{response.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("code"):
        return str(error["code"])
    return f"http.{response.status_code}"


def describe_api_error(code: str) -> str:
    if code == EMPTY_RESPONSE_CODE:
        return "Cobalt was able to resolve the URL, but the response from the server was empty. I'm sorry."
    return (
        "Cobalt couldn't resolve the URL. Please make sure that the URL is supported.\n\n"
        f"Error Code: {code}"
    )


# -------------------------
# Resolution API
# -------------------------
class CobaltClient:
    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        user_agent: str = "cobaltfox",
        timeout: float = 30,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.user_agent = user_agent
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        if self.api_key:
            headers["Authorization"] = f"Api-Key {self.api_key}"
        return headers

    def resolve(self, url: str) -> CobaltResult:
        body = {"url": url, "filenameStyle": "basic"}
        try:
            response = requests.post(self.api_url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as err:
            raise CobaltApiError("error.network") from err

        if not response.ok:
            code = _error_code_from_response(response)
            logger.warning("Cobalt rejected url=%s status=%s code=%s", url, response.status_code, code)
            raise CobaltApiError(code)

        try:
            data = response.json()
        except ValueError as err:
            raise CobaltApiError("error.invalid_json") from err
        if not isinstance(data, dict):
            raise CobaltApiError("error.invalid_json")

        if data.get("status") == "error":
            code = _error_code_from_response(response)
            logger.error("Cobalt returned an error body for url=%s: %s", url, data)
            raise CobaltApiError(code)

        result = CobaltResult.from_json(data)
        logger.info("Resolved url=%s status=%s filename=%s", url, result.status, result.filename)
        return result


# -------------------------
# Transfers
# -------------------------
def download_media(url: str, destination: Path, max_bytes: int, timeout: float = 60) -> Path:
    """Stream ``url`` into ``destination``.

    Raises MediaTooLargeError without writing anything when the announced
    Content-Length is above ``max_bytes``. Streams without a length are
    written in full; the caller checks the size on disk.
    """
    with requests.get(url, timeout=timeout, stream=True) as response:
        response.raise_for_status()
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            raise MediaTooLargeError(int(content_length), max_bytes)

        destination.parent.mkdir(parents=True, exist_ok=True)
        with destination.open("wb") as output:
            for chunk in response.iter_content(chunk_size=64 * 1024):
                if chunk:
                    output.write(chunk)

    logger.info("Media downloaded: path=%s size_bytes=%s", destination, destination.stat().st_size)
    return destination


class ZiplineUploader:
    def __init__(
        self,
        instance_url: str,
        token: str,
        folder: str | None = None,
        expires_at: str = "1h",
        timeout: float = 300,
    ) -> None:
        self.instance_url = instance_url.rstrip("/")
        self.token = token
        self.folder = folder
        self.expires_at = expires_at
        self.timeout = timeout

    def upload(self, path: Path) -> str:
        headers = {
            "authorization": self.token,
            "Format": "uuid",
            "No-JSON": "true",
            "Original-Name": "true",
            "Expires-At": self.expires_at,
        }
        if self.folder:
            headers["x-zipline-folder"] = str(self.folder)

        try:
            with path.open("rb") as f:
                response = requests.post(
                    f"{self.instance_url}/api/upload",
                    headers=headers,
                    files={"file": (path.name, f)},
                    timeout=self.timeout,
                )
            response.raise_for_status()
        except (OSError, requests.RequestException) as err:
            raise UploadError(f"upload of {path.name} failed") from err

        link = response.text.strip()
        if not link:
            raise UploadError("upload returned an empty link")
        logger.info("Uploaded oversized file: path=%s link=%s", path, link)
        return link
