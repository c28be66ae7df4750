import base64
import io
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

import numpy as np
import pytest
import requests
from PIL import Image
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth, HTTPDigestAuth

from url_detector.errors import (
    DecodeFailedError,
    EmptyTargetError,
    NetworkError,
    UnsupportedDepthError,
    UnsupportedLayoutError,
)
from url_detector.interfaces import HttpAuth, ImageLayout
from url_detector.source import (
    HttpImageSource,
    HttpOptions,
    ReaderImageSource,
    build_auth,
    decode_image,
    decode_pil_image,
    validate_format,
)


def _png_bytes(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


class _FakeResponse:
    def __init__(self, content: bytes = b"", status_code: int = 200) -> None:
        self.content = content
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


class _FakeSession:
    def __init__(self, response: _FakeResponse | None = None, exc: Exception | None = None) -> None:
        self.verify = True
        self.mounts: list[tuple[str, object]] = []
        self.calls: list[tuple[str, dict]] = []
        self.closed = False
        self._response = response or _FakeResponse()
        self._exc = exc

    def mount(self, prefix: str, adapter: object) -> None:
        self.mounts.append((prefix, adapter))

    def get(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        if self._exc is not None:
            raise self._exc
        return self._response

    def close(self) -> None:
        self.closed = True


def test_decode_image_grayscale_png() -> None:
    pixels = np.arange(12, dtype=np.uint8).reshape(3, 4)

    decoded = decode_image(_png_bytes(Image.fromarray(pixels)))

    assert (decoded.width, decoded.height) == (4, 3)
    assert decoded.layout is ImageLayout.GRAYSCALE
    assert decoded.bits_per_channel == 8
    assert decoded.channels == 1
    assert decoded.pixels == pixels.tobytes()


def test_decode_image_rgb_png_is_pixel_interleaved() -> None:
    pixels = np.zeros((2, 3, 3), dtype=np.uint8)
    pixels[1, 2] = (10, 20, 30)

    decoded = decode_image(_png_bytes(Image.fromarray(pixels)))

    assert decoded.layout is ImageLayout.TRUECOLOR
    assert decoded.bits_per_channel == 8
    offset = (1 * 3 + 2) * 3
    assert decoded.pixels[offset : offset + 3] == bytes([10, 20, 30])


def test_decode_bilevel_expands_to_bytes() -> None:
    image = Image.new("1", (2, 2), 1)

    decoded = decode_pil_image(image)

    assert decoded.bits_per_channel == 1
    assert decoded.pixels == bytes([255, 255, 255, 255])


def test_decode_16_bit_grayscale() -> None:
    samples = np.array([[0, 1000, 65535]], dtype=np.uint16)

    decoded = decode_pil_image(Image.fromarray(samples))

    assert decoded.bits_per_channel == 16
    assert np.frombuffer(decoded.pixels, dtype=np.uint16).tolist() == [0, 1000, 65535]


def test_decode_32_bit_grayscale() -> None:
    samples = np.array([[7, 70000]], dtype=np.int32)

    decoded = decode_pil_image(Image.fromarray(samples))

    assert decoded.bits_per_channel == 32
    assert np.frombuffer(decoded.pixels, dtype=np.uint32).tolist() == [7, 70000]


@pytest.mark.parametrize("mode", ["RGBA", "P", "CMYK", "LA"])
def test_decode_rejects_unsupported_layouts(mode: str) -> None:
    with pytest.raises(UnsupportedLayoutError, match=mode):
        decode_pil_image(Image.new(mode, (2, 2)))


def test_decode_rejects_float_samples() -> None:
    with pytest.raises(UnsupportedDepthError):
        decode_pil_image(Image.new("F", (2, 2)))


def test_validate_format_rejects_12_bit_depth() -> None:
    with pytest.raises(UnsupportedDepthError, match="depth=12"):
        validate_format(ImageLayout.GRAYSCALE, 12)


def test_decode_image_rejects_garbage_and_empty_payloads() -> None:
    with pytest.raises(DecodeFailedError):
        decode_image(b"definitely not an image")
    with pytest.raises(DecodeFailedError, match="empty"):
        decode_image(b"")


def test_reader_rejects_empty_url() -> None:
    with pytest.raises(EmptyTargetError):
        ReaderImageSource().fetch("")


def test_reader_reads_local_path_and_file_url(tmp_path: Path) -> None:
    path = tmp_path / "frame.png"
    Image.new("L", (5, 4), 9).save(path)
    source = ReaderImageSource()

    from_path = source.fetch(str(path))
    from_url = source.fetch(path.as_uri())

    assert (from_path.width, from_path.height) == (5, 4)
    assert from_url.pixels == from_path.pixels


def test_reader_missing_file_is_network_error(tmp_path: Path) -> None:
    with pytest.raises(NetworkError, match="cannot read"):
        ReaderImageSource().fetch(str(tmp_path / "missing.png"))


def test_reader_uses_http_client_for_http_urls() -> None:
    session = _FakeSession(_FakeResponse(_png_bytes(Image.new("L", (2, 2)))))
    source = ReaderImageSource(timeout_s=3.0, http=session)

    decoded = source.fetch("http://camera.local/image.png")

    assert decoded.width == 2
    assert session.calls == [("http://camera.local/image.png", {"timeout": 3.0})]


def test_build_auth_maps_schemes() -> None:
    basic = build_auth(HttpOptions(auth=HttpAuth.BASIC, username="u", password="p"))
    digest = build_auth(HttpOptions(auth=HttpAuth.DIGEST, username="u", password="p"))
    anysafe = build_auth(HttpOptions(auth=HttpAuth.ANYSAFE, username="u", password="p"))
    any_auth = build_auth(HttpOptions(auth=HttpAuth.ANY, username="u", password="p"))

    assert type(basic) is HTTPBasicAuth
    assert type(digest) is HTTPDigestAuth
    assert type(anysafe) is HTTPDigestAuth
    assert isinstance(any_auth, HTTPDigestAuth)
    assert build_auth(HttpOptions(auth=HttpAuth.BASIC)) is None


def test_build_auth_bearer_sets_authorization_header() -> None:
    auth = build_auth(HttpOptions(auth=HttpAuth.BEARER, password="token123"))
    request = requests.Request("GET", "http://camera.local/").prepare()

    auth(request)

    assert request.headers["Authorization"] == "Bearer token123"
    assert build_auth(HttpOptions(auth=HttpAuth.BEARER)) is None


@pytest.mark.parametrize("scheme", [HttpAuth.NTLM, HttpAuth.NEGOTIATE, HttpAuth.AWS_SIGV4])
def test_build_auth_unsupported_scheme_is_network_error(scheme: HttpAuth) -> None:
    with pytest.raises(NetworkError, match=scheme.value):
        build_auth(HttpOptions(auth=scheme, username="u", password="p"))


def test_http_source_passes_auth_and_timeout() -> None:
    session = _FakeSession(_FakeResponse(_png_bytes(Image.new("RGB", (3, 2)))))
    source = HttpImageSource(
        HttpOptions(auth=HttpAuth.DIGEST, username="u", password="p", timeout_s=1.5),
        session=session,
    )

    decoded = source.fetch("https://camera.local/snap.png")

    assert decoded.layout is ImageLayout.TRUECOLOR
    (_url, kwargs), = session.calls
    assert isinstance(kwargs["auth"], HTTPDigestAuth)
    assert kwargs["timeout"] == 1.5


def test_http_source_configure_applies_tls_options() -> None:
    session = _FakeSession()
    source = HttpImageSource(session=session)

    source.configure(HttpOptions(verify_peer=False))
    assert session.verify is False

    source.configure(HttpOptions(verify_peer=True, verify_host=False))
    assert session.verify is True
    prefix, adapter = session.mounts[-1]
    assert prefix == "https://"
    assert type(adapter).__name__ == "_NoHostnameCheckAdapter"


def test_http_source_http_error_is_network_error() -> None:
    source = HttpImageSource(session=_FakeSession(_FakeResponse(status_code=404)))

    with pytest.raises(NetworkError, match="404"):
        source.fetch("http://camera.local/missing.jpg")


def test_http_source_connection_error_is_network_error() -> None:
    session = _FakeSession(exc=requests.ConnectionError("refused"))
    source = HttpImageSource(session=session)

    with pytest.raises(NetworkError, match="refused"):
        source.fetch("http://camera.local/image.jpg")


def test_http_source_unsupported_scheme_fails_fetch() -> None:
    session = _FakeSession(_FakeResponse(_png_bytes(Image.new("L", (2, 2)))))
    source = HttpImageSource(HttpOptions(auth=HttpAuth.NTLM, username="u"), session=session)

    with pytest.raises(NetworkError):
        source.fetch("http://camera.local/image.png")
    assert session.calls == []


def test_http_source_reads_local_files_and_closes(tmp_path: Path) -> None:
    path = tmp_path / "frame.png"
    Image.new("L", (2, 3)).save(path)
    session = _FakeSession()
    source = HttpImageSource(session=session)

    assert source.fetch(str(path)).height == 3

    source.close()
    assert session.closed is True


def test_decode_image_oversized_image_is_decode_failure(monkeypatch) -> None:
    payload = _png_bytes(Image.new("L", (100, 100)))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10)

    with pytest.raises(DecodeFailedError, match="cannot decode image"):
        decode_image(payload)


def test_http_source_reuses_https_adapter_until_host_check_changes(monkeypatch) -> None:
    closed: list[object] = []
    monkeypatch.setattr(HTTPAdapter, "close", lambda self: closed.append(self))
    session = _FakeSession()
    source = HttpImageSource(session=session)

    source.configure(HttpOptions(username="operator"))
    source.configure(HttpOptions(auth=HttpAuth.DIGEST, timeout_s=2.0))

    assert len(session.mounts) == 1
    assert closed == []

    first_adapter = session.mounts[0][1]
    source.configure(HttpOptions(verify_host=False))

    assert len(session.mounts) == 2
    assert closed == [first_adapter]


class _BasicOnlyHandler(BaseHTTPRequestHandler):
    expected = "Basic " + base64.b64encode(b"operator:s3cret").decode("ascii")
    body = b""

    def do_GET(self) -> None:
        if self.headers.get("Authorization") != self.expected:
            self.send_response(401)
            self.send_header("WWW-Authenticate", 'Basic realm="camera"')
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        self.send_response(200)
        self.send_header("Content-Type", "image/png")
        self.send_header("Content-Length", str(len(self.body)))
        self.end_headers()
        self.wfile.write(self.body)

    def log_message(self, *_args) -> None:
        pass


@pytest.fixture
def basic_only_server():
    _BasicOnlyHandler.body = _png_bytes(Image.new("L", (2, 2), 7))
    server = HTTPServer(("127.0.0.1", 0), _BasicOnlyHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/snap.png"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2.0)


def test_any_auth_answers_basic_challenge(basic_only_server: str) -> None:
    source = HttpImageSource(
        HttpOptions(auth=HttpAuth.ANY, username="operator", password="s3cret", timeout_s=5.0)
    )
    try:
        decoded = source.fetch(basic_only_server)
    finally:
        source.close()

    assert (decoded.width, decoded.height) == (2, 2)
    assert decoded.pixels == bytes([7, 7, 7, 7])


def test_any_auth_wrong_password_is_network_error(basic_only_server: str) -> None:
    source = HttpImageSource(
        HttpOptions(auth=HttpAuth.ANY, username="operator", password="wrong", timeout_s=5.0)
    )
    try:
        with pytest.raises(NetworkError, match="401"):
            source.fetch(basic_only_server)
    finally:
        source.close()
