from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import IO, Any, Protocol


DRIVER_NAME = "URLDriver"
DRIVER_VERSION = "2.3.1"
MANUFACTURER = "URL Driver"
MODEL = "Pillow"


class ImageMode(Enum):
    SINGLE = "Single"
    MULTIPLE = "Multiple"
    CONTINUOUS = "Continuous"


class DetectorStatus(Enum):
    IDLE = "Idle"
    ACQUIRE = "Acquire"
    WAITING = "Waiting"


class ShutterState(Enum):
    CLOSED = "Closed"
    OPEN = "Open"


class ImageLayout(Enum):
    GRAYSCALE = "Grayscale"
    TRUECOLOR = "TrueColor"


class ColorMode(Enum):
    MONO = "Mono"
    # Pixel-interleaved RGB: the color index is the fastest-varying dimension.
    RGB1 = "RGB1"


class DataType(Enum):
    UINT8 = "UInt8"
    UINT16 = "UInt16"
    UINT32 = "UInt32"


class HttpAuth(Enum):
    BASIC = "basic"
    DIGEST = "digest"
    DIGEST_IE = "digest_ie"
    BEARER = "bearer"
    NEGOTIATE = "negotiate"
    NTLM = "ntlm"
    NTLM_WB = "ntlm_wb"
    ANY = "any"
    ANYSAFE = "anysafe"
    ONLY = "only"
    AWS_SIGV4 = "aws_sigv4"


@dataclass(slots=True, frozen=True)
class DecodedImage:
    """Decoded image samples and the metadata needed to shape a frame.

    `pixels` holds native-endian samples in row-major, pixel-interleaved
    order. 1-bit images are already expanded to one byte per sample.
    """

    width: int
    height: int
    layout: ImageLayout
    bits_per_channel: int
    pixels: bytes

    @property
    def channels(self) -> int:
        return 3 if self.layout is ImageLayout.TRUECOLOR else 1


class ImageSourceInterface(Protocol):
    """Interface for fetching and decoding one image from a URL."""

    def fetch(self, url: str) -> DecodedImage:
        """Retrieve and decode the image at `url`."""


class DetectorInterface(Protocol):
    """Capability set a host uses to drive a detector."""

    def start_acquisition(self) -> None:
        """Begin an acquisition run."""

    def stop_acquisition(self) -> None:
        """Request the current run to end."""

    def read(self, name: str) -> Any:
        """Read a named setting."""

    def write(self, name: str, value: Any) -> Any:
        """Write a named setting and apply its side effects."""

    def report(self, fp: IO[str] | None = None, details: int = 0) -> None:
        """Print a human-readable status dump."""
