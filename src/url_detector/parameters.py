"""Named detector settings guarded by one re-entrant lock.

The store is both the settings surface clients write to and the lock the
acquisition task holds while it works. Changes accumulate until
`publish()` hands them to subscribers as one ordered batch.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

import PIL

from .errors import ConfigError
from .interfaces import (
    DRIVER_VERSION as _DRIVER_VERSION,
    MANUFACTURER as _MANUFACTURER,
    MODEL as _MODEL,
    ColorMode,
    DataType,
    DetectorStatus,
    HttpAuth,
    ImageMode,
    ShutterState,
)

logger = logging.getLogger(__name__)

URL_NAME = "URL_NAME"
ACQUIRE = "ACQUIRE"
IMAGE_MODE = "IMAGE_MODE"
NUM_IMAGES = "NUM_IMAGES"
NUM_IMAGES_COUNTER = "NUM_IMAGES_COUNTER"
ACQUIRE_PERIOD = "ACQUIRE_PERIOD"
STATUS = "STATUS"
STATUS_MESSAGE = "STATUS_MESSAGE"
SHUTTER = "SHUTTER"
ARRAY_COUNTER = "ARRAY_COUNTER"
ARRAY_CALLBACKS = "ARRAY_CALLBACKS"
SIZE_X = "SIZE_X"
SIZE_Y = "SIZE_Y"
ARRAY_SIZE_X = "ARRAY_SIZE_X"
ARRAY_SIZE_Y = "ARRAY_SIZE_Y"
ARRAY_SIZE = "ARRAY_SIZE"
DATA_TYPE = "DATA_TYPE"
COLOR_MODE = "COLOR_MODE"
MANUFACTURER = "MANUFACTURER"
MODEL = "MODEL"
DRIVER_VERSION = "DRIVER_VERSION"
SDK_VERSION = "SDK_VERSION"
SERIAL_NUMBER = "SERIAL_NUMBER"
FIRMWARE_VERSION = "FIRMWARE_VERSION"

USE_HTTP = "USE_HTTP"
HTTP_AUTH = "HTTP_AUTH"
SSL_VERIFY_HOST = "SSL_VERIFY_HOST"
SSL_VERIFY_PEER = "SSL_VERIFY_PEER"
HTTP_USERNAME = "HTTP_USERNAME"
HTTP_PASSWORD = "HTTP_PASSWORD"
HTTP_TIMEOUT = "HTTP_TIMEOUT"
HTTP_CONFIG_PATH = "HTTP_CONFIG_PATH"
HTTP_CONFIG_VALID = "HTTP_CONFIG_VALID"
HTTP_LOAD_CONFIG = "HTTP_LOAD_CONFIG"

DETECTOR_GROUP = "detector"
HTTP_GROUP = "http"

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}

ParamCallback = Callable[[dict[str, Any]], None]


@dataclass(slots=True, frozen=True)
class ParamSpec:
    name: str
    kind: type
    default: Any
    readonly: bool = False
    minimum: float | None = None
    group: str = DETECTOR_GROUP


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise ValueError(f"not an integer: {value!r}")


def _coerce_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        out = float(value)
    elif isinstance(value, str):
        out = float(value.strip())
    else:
        raise ValueError(f"not a number: {value!r}")
    if math.isnan(out):
        raise ValueError("NaN is not allowed")
    return out


def _coerce_enum(kind: type[Enum], value: Any) -> Enum:
    if isinstance(value, kind):
        return value
    members = list(kind)
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value < len(members):
            return members[value]
        raise ValueError(f"index {value} out of range for {kind.__name__}")
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _coerce_enum(kind, int(text))
        for member in members:
            if text.lower() in (member.name.lower(), str(member.value).lower()):
                return member
    choices = ", ".join(str(m.value) for m in members)
    raise ValueError(f"{value!r} is not one of: {choices}")


def coerce_value(spec: ParamSpec, value: Any) -> Any:
    try:
        if spec.kind is bool:
            out = _coerce_bool(value)
        elif spec.kind is int:
            out = _coerce_int(value)
        elif spec.kind is float:
            out = _coerce_float(value)
        elif spec.kind is str:
            if not isinstance(value, str):
                raise ValueError(f"not a string: {value!r}")
            out = value
        elif issubclass(spec.kind, Enum):
            out = _coerce_enum(spec.kind, value)
        else:
            raise ValueError(f"unsupported parameter kind {spec.kind!r}")
    except ValueError as exc:
        raise ConfigError(f"{spec.name}: {exc}") from exc

    if spec.minimum is not None and out < spec.minimum:
        raise ConfigError(f"{spec.name}: {out} is below the minimum {spec.minimum}")
    return out


class ParameterStore:
    """Thread-safe named settings with batched change notification."""

    def __init__(self, specs: Iterable[ParamSpec]) -> None:
        self._lock = threading.RLock()
        self._specs: dict[str, ParamSpec] = {}
        self._values: dict[str, Any] = {}
        for spec in specs:
            self._specs[spec.name] = spec
            self._values[spec.name] = spec.default
        self._pending: dict[str, Any] = {}
        self._subscribers: list[ParamCallback] = []

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def __enter__(self) -> "ParameterStore":
        self._lock.acquire()
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self._lock.release()

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def names(self, group: str | None = None) -> list[str]:
        return [n for n, s in self._specs.items() if group is None or s.group == group]

    def spec(self, name: str) -> ParamSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ConfigError(f"unknown setting {name!r}") from None

    def coerce(self, name: str, value: Any) -> Any:
        return coerce_value(self.spec(name), value)

    def get(self, name: str) -> Any:
        with self._lock:
            self.spec(name)
            return self._values[name]

    def set(self, name: str, value: Any) -> Any:
        """Store a value; returns the coerced value actually stored."""

        with self._lock:
            out = self.coerce(name, value)
            if self._values[name] != out or type(self._values[name]) is not type(out):
                self._values[name] = out
                # Re-inserting keeps the batch in submission order.
                self._pending.pop(name, None)
                self._pending[name] = out
            return out

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def subscribe(self, callback: ParamCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: ParamCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self) -> dict[str, Any]:
        """Flush pending changes to subscribers and return them."""

        with self._lock:
            changes, self._pending = self._pending, {}
            if not changes:
                return changes
            for callback in list(self._subscribers):
                try:
                    callback(dict(changes))
                except Exception:
                    logger.exception("Setting subscriber %r failed", callback)
            return changes


def default_parameters(http_transport: bool = True) -> list[ParamSpec]:
    specs = [
        ParamSpec(URL_NAME, str, ""),
        ParamSpec(ACQUIRE, bool, False),
        ParamSpec(IMAGE_MODE, ImageMode, ImageMode.SINGLE),
        ParamSpec(NUM_IMAGES, int, 1, minimum=1),
        ParamSpec(NUM_IMAGES_COUNTER, int, 0, readonly=True),
        ParamSpec(ACQUIRE_PERIOD, float, 0.0, minimum=0.0),
        ParamSpec(STATUS, DetectorStatus, DetectorStatus.IDLE, readonly=True),
        ParamSpec(STATUS_MESSAGE, str, "", readonly=True),
        ParamSpec(SHUTTER, ShutterState, ShutterState.CLOSED, readonly=True),
        ParamSpec(ARRAY_COUNTER, int, 0, readonly=True),
        ParamSpec(ARRAY_CALLBACKS, bool, True),
        ParamSpec(SIZE_X, int, 0, readonly=True),
        ParamSpec(SIZE_Y, int, 0, readonly=True),
        ParamSpec(ARRAY_SIZE_X, int, 0, readonly=True),
        ParamSpec(ARRAY_SIZE_Y, int, 0, readonly=True),
        ParamSpec(ARRAY_SIZE, int, 0, readonly=True),
        ParamSpec(DATA_TYPE, DataType, DataType.UINT8, readonly=True),
        ParamSpec(COLOR_MODE, ColorMode, ColorMode.MONO, readonly=True),
        ParamSpec(MANUFACTURER, str, _MANUFACTURER, readonly=True),
        ParamSpec(MODEL, str, _MODEL, readonly=True),
        ParamSpec(DRIVER_VERSION, str, _DRIVER_VERSION, readonly=True),
        ParamSpec(SDK_VERSION, str, PIL.__version__, readonly=True),
        ParamSpec(SERIAL_NUMBER, str, "No serial number", readonly=True),
        ParamSpec(FIRMWARE_VERSION, str, "No firmware", readonly=True),
    ]
    if http_transport:
        specs += [
            ParamSpec(USE_HTTP, bool, False, group=HTTP_GROUP),
            ParamSpec(HTTP_AUTH, HttpAuth, HttpAuth.BASIC, group=HTTP_GROUP),
            ParamSpec(SSL_VERIFY_HOST, bool, True, group=HTTP_GROUP),
            ParamSpec(SSL_VERIFY_PEER, bool, True, group=HTTP_GROUP),
            ParamSpec(HTTP_USERNAME, str, "", group=HTTP_GROUP),
            ParamSpec(HTTP_PASSWORD, str, "", group=HTTP_GROUP),
            ParamSpec(HTTP_TIMEOUT, float, 0.0, minimum=0.0, group=HTTP_GROUP),
            ParamSpec(HTTP_CONFIG_PATH, str, "", group=HTTP_GROUP),
            ParamSpec(HTTP_CONFIG_VALID, bool, False, readonly=True, group=HTTP_GROUP),
            ParamSpec(HTTP_LOAD_CONFIG, bool, False, group=HTTP_GROUP),
        ]
    return specs
