"""URL-addressed image detector: acquire frames from web cameras, servers and files."""

from .controller import AcquisitionController
from .driver import DriverConfig, UrlDriver
from .errors import (
    ConfigError,
    DecodeFailedError,
    EmptyTargetError,
    FetchError,
    NetworkError,
    PoolExhaustedError,
    ResourceError,
    UnsupportedDepthError,
    UnsupportedLayoutError,
    UrlDetectorError,
)
from .frame import Frame, FramePool, build_frame
from .interfaces import (
    ColorMode,
    DataType,
    DecodedImage,
    DetectorInterface,
    DetectorStatus,
    HttpAuth,
    ImageLayout,
    ImageMode,
    ImageSourceInterface,
    ShutterState,
)
from .parameters import ParameterStore
from .signals import BinarySignal
from .source import HttpImageSource, HttpOptions, ReaderImageSource, decode_image

__all__ = [
    "AcquisitionController",
    "DriverConfig",
    "UrlDriver",
    "ConfigError",
    "DecodeFailedError",
    "EmptyTargetError",
    "FetchError",
    "NetworkError",
    "PoolExhaustedError",
    "ResourceError",
    "UnsupportedDepthError",
    "UnsupportedLayoutError",
    "UrlDetectorError",
    "Frame",
    "FramePool",
    "build_frame",
    "ColorMode",
    "DataType",
    "DecodedImage",
    "DetectorInterface",
    "DetectorStatus",
    "HttpAuth",
    "ImageLayout",
    "ImageMode",
    "ImageSourceInterface",
    "ShutterState",
    "ParameterStore",
    "BinarySignal",
    "HttpImageSource",
    "HttpOptions",
    "ReaderImageSource",
    "decode_image",
]
