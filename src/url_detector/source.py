"""Image sources: fetch bytes from a URL and decode them with Pillow.

Two strategies implement the same `fetch(url)` contract:

- `ReaderImageSource` opens whatever an image library would open from a
  name: local paths, `file://` URLs and plain `http(s)` GETs.
- `HttpImageSource` goes through a configured `requests.Session` with
  authentication and TLS verification options.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from urllib.request import url2pathname

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError
from requests.adapters import HTTPAdapter
from requests.auth import AuthBase, HTTPBasicAuth, HTTPDigestAuth

from .errors import (
    DecodeFailedError,
    EmptyTargetError,
    NetworkError,
    UnsupportedDepthError,
    UnsupportedLayoutError,
)
from .interfaces import DecodedImage, HttpAuth, ImageLayout

logger = logging.getLogger(__name__)

SUPPORTED_DEPTHS = (1, 8, 16, 32)

_MODE_FORMATS: dict[str, tuple[ImageLayout, int]] = {
    "1": (ImageLayout.GRAYSCALE, 1),
    "L": (ImageLayout.GRAYSCALE, 8),
    "I;16": (ImageLayout.GRAYSCALE, 16),
    "I;16L": (ImageLayout.GRAYSCALE, 16),
    "I;16B": (ImageLayout.GRAYSCALE, 16),
    "I;16N": (ImageLayout.GRAYSCALE, 16),
    "I": (ImageLayout.GRAYSCALE, 32),
    "RGB": (ImageLayout.TRUECOLOR, 8),
}

_SAMPLE_DTYPES = {1: np.uint8, 8: np.uint8, 16: np.uint16, 32: np.uint32}


def validate_format(layout: Any, bits_per_channel: int) -> None:
    """Reject layouts and bit depths that cannot be shaped into a frame."""

    if layout not in (ImageLayout.GRAYSCALE, ImageLayout.TRUECOLOR):
        raise UnsupportedLayoutError(f"unsupported image layout {layout!r}")
    if bits_per_channel not in SUPPORTED_DEPTHS:
        raise UnsupportedDepthError(f"unsupported depth={bits_per_channel}")


def decode_pil_image(image: Image.Image) -> DecodedImage:
    mode = image.mode
    if mode == "F":
        raise UnsupportedDepthError("32-bit floating point samples are not supported")
    try:
        layout, bits = _MODE_FORMATS[mode]
    except KeyError:
        raise UnsupportedLayoutError(f"unsupported image mode {mode!r}") from None
    validate_format(layout, bits)

    if bits == 1:
        image = image.convert("L")
    samples = np.asarray(image).astype(_SAMPLE_DTYPES[bits], copy=False)
    return DecodedImage(
        width=image.width,
        height=image.height,
        layout=layout,
        bits_per_channel=bits,
        pixels=np.ascontiguousarray(samples).tobytes(),
    )


def decode_image(data: bytes) -> DecodedImage:
    """Decode an encoded image container (JPEG, PNG, TIFF, ...)."""

    if not data:
        raise DecodeFailedError("empty image payload")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeFailedError(f"cannot decode image: {exc}") from exc
    with image:
        return decode_pil_image(image)


def _local_path(url: str) -> Path | None:
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme in ("http", "https"):
        return None
    if scheme == "file":
        return Path(url2pathname(parsed.path))
    return Path(url)


def _read_local(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise NetworkError(f"cannot read {path}: {exc}") from exc


def _http_get(http: Any, url: str, **kwargs: Any) -> bytes:
    try:
        response = http.get(url, **kwargs)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise NetworkError(f"HTTP GET {url} failed: {exc}") from exc
    return response.content


class ReaderImageSource:
    """Default image source: local files or unauthenticated HTTP GETs."""

    def __init__(self, timeout_s: float | None = None, http: Any = None) -> None:
        self._timeout_s = timeout_s
        self._http = http if http is not None else requests

    def fetch(self, url: str) -> DecodedImage:
        if not url:
            raise EmptyTargetError("URL is empty")
        path = _local_path(url)
        if path is None:
            data = _http_get(self._http, url, timeout=self._timeout_s)
        else:
            data = _read_local(path)
        return decode_image(data)


@dataclass(slots=True)
class HttpOptions:
    auth: HttpAuth = HttpAuth.BASIC
    username: str = ""
    password: str = ""
    verify_peer: bool = True
    verify_host: bool = True
    # None waits indefinitely.
    timeout_s: float | None = None


class _BearerAuth(AuthBase):
    def __init__(self, token: str) -> None:
        self.token = token

    def __call__(self, r):
        r.headers["Authorization"] = f"Bearer {self.token}"
        return r


class _AnyAuth(HTTPDigestAuth):
    """Answer whichever of Digest or Basic the server challenges with."""

    def handle_401(self, r, **kwargs):
        challenge = r.headers.get("www-authenticate", "")
        if r.status_code != 401 or not challenge.lower().startswith("basic"):
            return super().handle_401(r, **kwargs)

        r.content
        r.close()
        prep = r.request.copy()
        HTTPBasicAuth(self.username, self.password)(prep)
        retry = r.connection.send(prep, **kwargs)
        retry.history.append(r)
        retry.request = prep
        return retry


class _NoHostnameCheckAdapter(HTTPAdapter):
    """Verify the peer certificate chain but not the host name."""

    def init_poolmanager(self, *args, **kwargs):
        kwargs["assert_hostname"] = False
        super().init_poolmanager(*args, **kwargs)


def build_auth(options: HttpOptions) -> AuthBase | None:
    scheme = options.auth
    if scheme is HttpAuth.BEARER:
        return _BearerAuth(options.password) if options.password else None
    if not options.username:
        return None
    if scheme is HttpAuth.BASIC:
        return HTTPBasicAuth(options.username, options.password)
    if scheme in (HttpAuth.DIGEST, HttpAuth.DIGEST_IE, HttpAuth.ANYSAFE):
        return HTTPDigestAuth(options.username, options.password)
    if scheme is HttpAuth.ANY:
        return _AnyAuth(options.username, options.password)
    raise NetworkError(f"HTTP auth scheme {scheme.value!r} is not supported by the requests transport")


class HttpImageSource:
    """Image source backed by a configured `requests.Session`."""

    def __init__(self, options: HttpOptions | None = None, session: Any = None) -> None:
        self._session = session if session is not None else requests.Session()
        self._options = HttpOptions()
        self._https_adapter: HTTPAdapter | None = None
        self.configure(options or HttpOptions())

    @property
    def options(self) -> HttpOptions:
        return self._options

    def configure(self, options: HttpOptions) -> None:
        self._options = options
        self._session.verify = options.verify_peer
        adapter_cls = (
            _NoHostnameCheckAdapter if options.verify_peer and not options.verify_host else HTTPAdapter
        )
        previous = self._https_adapter
        if previous is None or type(previous) is not adapter_cls:
            self._https_adapter = adapter_cls()
            self._session.mount("https://", self._https_adapter)
            if previous is not None:
                previous.close()
        logger.debug(
            "HTTP source configured: auth=%s user=%r verify_peer=%s verify_host=%s timeout=%s",
            options.auth.value,
            options.username,
            options.verify_peer,
            options.verify_host,
            options.timeout_s,
        )

    def fetch(self, url: str) -> DecodedImage:
        if not url:
            raise EmptyTargetError("URL is empty")
        path = _local_path(url)
        if path is not None:
            return decode_image(_read_local(path))
        auth = build_auth(self._options)
        data = _http_get(self._session, url, auth=auth, timeout=self._options.timeout_s)
        return decode_image(data)

    def close(self) -> None:
        self._session.close()
