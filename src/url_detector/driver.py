from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from .config_file import read_config_file
from .controller import AcquisitionController, FrameCallback
from .errors import ConfigError
from .frame import Frame, FramePool
from .interfaces import DRIVER_NAME, DetectorInterface, DetectorStatus, ImageSourceInterface
from .parameters import (
    ACQUIRE,
    ARRAY_COUNTER,
    COLOR_MODE,
    DATA_TYPE,
    DRIVER_VERSION,
    FIRMWARE_VERSION,
    HTTP_AUTH,
    HTTP_CONFIG_PATH,
    HTTP_CONFIG_VALID,
    HTTP_GROUP,
    HTTP_LOAD_CONFIG,
    HTTP_PASSWORD,
    HTTP_TIMEOUT,
    HTTP_USERNAME,
    IMAGE_MODE,
    MANUFACTURER,
    MODEL,
    NUM_IMAGES_COUNTER,
    SDK_VERSION,
    SERIAL_NUMBER,
    SIZE_X,
    SIZE_Y,
    SSL_VERIFY_HOST,
    SSL_VERIFY_PEER,
    STATUS,
    STATUS_MESSAGE,
    URL_NAME,
    USE_HTTP,
    ParameterStore,
    default_parameters,
)
from .signals import BinarySignal
from .source import HttpImageSource, HttpOptions, ReaderImageSource

logger = logging.getLogger(__name__)

# Settings a config file may not set: they drive the load itself.
_CONFIG_FILE_EXCLUDED = {HTTP_CONFIG_PATH, HTTP_CONFIG_VALID, HTTP_LOAD_CONFIG}


@dataclass(slots=True)
class DriverConfig:
    port_name: str = "URL1"
    # -1 leaves the frame pool unbounded.
    max_buffers: int = -1
    max_memory: int = -1
    # Recorded and reported only; CPython threads have no priority.
    priority: int = 0
    # 0 keeps the interpreter's default thread stack size.
    stack_size: int = 0
    http_transport: bool = True


class UrlDriver(DetectorInterface):
    """Detector that reads its images from a URL.

    Clients drive it through named settings (`write`/`read`); writing
    `ACQUIRE` starts and stops acquisition runs handled by a background
    `AcquisitionController`. Frames are delivered to callbacks registered
    with `subscribe`:

    ```python
    with UrlDriver() as driver:
        driver.write(URL_NAME, "http://camera.local/image.jpg")
        driver.subscribe(lambda frame, _channel: print(frame))
        driver.start_acquisition()
        driver.wait_for_completion(timeout=10.0)
    ```
    """

    def __init__(
        self,
        config: DriverConfig | None = None,
        *,
        source: ImageSourceInterface | None = None,
        http_source: ImageSourceInterface | None = None,
        start_task: bool = True,
    ) -> None:
        self._config = config or DriverConfig()
        self._validate_config()

        self._store = ParameterStore(default_parameters(self._config.http_transport))
        self._start_signal = BinarySignal()
        self._stop_signal = BinarySignal()
        self._pool = FramePool(self._config.max_buffers, self._config.max_memory)

        self._reader = source if source is not None else ReaderImageSource()
        self._http: ImageSourceInterface | None = None
        if self._config.http_transport:
            self._http = http_source if http_source is not None else HttpImageSource()
            self._configure_http()

        self._done = threading.Condition()
        self._acquire_seen = False
        self._status_seen = DetectorStatus.IDLE
        self._store.subscribe(self._on_settings_published)

        self._controller = AcquisitionController(
            self._store,
            self._pool,
            self._select_source,
            self._start_signal,
            self._stop_signal,
            name=f"{self._config.port_name}Task",
            stack_size=self._config.stack_size,
        )
        if start_task:
            self._controller.start()

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def settings(self) -> ParameterStore:
        return self._store

    @property
    def pool(self) -> FramePool:
        return self._pool

    @property
    def controller(self) -> AcquisitionController:
        return self._controller

    @property
    def current_frame(self) -> Frame | None:
        return self._controller.current_frame

    @property
    def last_error(self) -> Exception | None:
        return self._controller.last_error

    def _validate_config(self) -> None:
        if not self._config.port_name:
            raise ConfigError("port_name must not be empty")
        if self._config.stack_size < 0:
            raise ConfigError("stack_size must be >= 0")

    def _select_source(self) -> ImageSourceInterface:
        if self._http is not None and self._store.get(USE_HTTP):
            return self._http
        return self._reader

    def _configure_http(self) -> None:
        configure = getattr(self._http, "configure", None)
        if not callable(configure):
            return
        timeout = self._store.get(HTTP_TIMEOUT)
        configure(
            HttpOptions(
                auth=self._store.get(HTTP_AUTH),
                username=self._store.get(HTTP_USERNAME),
                password=self._store.get(HTTP_PASSWORD),
                verify_peer=self._store.get(SSL_VERIFY_PEER),
                verify_host=self._store.get(SSL_VERIFY_HOST),
                timeout_s=timeout if timeout > 0 else None,
            )
        )

    def _on_settings_published(self, changes: dict[str, Any]) -> None:
        if ACQUIRE not in changes and STATUS not in changes:
            return
        with self._done:
            self._acquire_seen = changes.get(ACQUIRE, self._acquire_seen)
            self._status_seen = changes.get(STATUS, self._status_seen)
            self._done.notify_all()

    def read(self, name: str) -> Any:
        return self._store.get(name)

    def write(self, name: str, value: Any) -> Any:
        """Write a setting and apply its side effects.

        Raises ConfigError (and changes nothing) for unknown or read-only
        settings and values that fail conversion.
        """

        with self._store:
            spec = self._store.spec(name)
            if spec.readonly:
                raise ConfigError(f"{name} is read-only")
            stored = self._store.set(name, value)
            try:
                if name == ACQUIRE:
                    self._on_acquire_written(stored)
                elif name == HTTP_CONFIG_PATH:
                    self._store.set(HTTP_CONFIG_VALID, bool(stored) and Path(stored).is_file())
                elif name == HTTP_LOAD_CONFIG:
                    if stored:
                        try:
                            self.load_config(self._store.get(HTTP_CONFIG_PATH))
                        finally:
                            self._store.set(HTTP_LOAD_CONFIG, False)
                elif spec.group == HTTP_GROUP:
                    self._configure_http()
            finally:
                self._store.publish()

        logger.debug(
            "%s:%s: write %s=%r",
            DRIVER_NAME,
            self._config.port_name,
            name,
            "***" if name == HTTP_PASSWORD else stored,
        )
        return stored

    def _on_acquire_written(self, acquire: bool) -> None:
        status = self._store.get(STATUS)
        if acquire and status is DetectorStatus.IDLE:
            # The task only starts once the caller releases the lock.
            self._start_signal.signal()
        if not acquire and status is not DetectorStatus.IDLE:
            self._stop_signal.signal()

    def start_acquisition(self) -> None:
        self.write(ACQUIRE, True)

    def stop_acquisition(self) -> None:
        self.write(ACQUIRE, False)

    def wait_for_completion(self, timeout: float | None = None) -> bool:
        """Block until no run is active; returns False on timeout."""

        with self._done:
            return self._done.wait_for(
                lambda: not self._acquire_seen and self._status_seen is DetectorStatus.IDLE,
                timeout=timeout,
            )

    def subscribe(self, callback: FrameCallback) -> None:
        self._controller.subscribe(callback)

    def unsubscribe(self, callback: FrameCallback) -> None:
        self._controller.unsubscribe(callback)

    def load_config(self, path: str | Path) -> dict[str, str]:
        """Apply HTTP settings from a `KEY=value` file.

        Every entry is validated before any is applied, so a bad key or
        value leaves all settings untouched.
        """

        if self._http is None:
            raise ConfigError("HTTP transport is not enabled for this driver")
        entries = {key.upper(): value for key, value in read_config_file(path).items()}
        allowed = set(self._store.names(HTTP_GROUP)) - _CONFIG_FILE_EXCLUDED
        with self._store:
            for key, value in entries.items():
                if key not in allowed:
                    raise ConfigError(f"{path}: unrecognized setting {key!r}")
                self._store.coerce(key, value)
            for key, value in entries.items():
                self.write(key, value)
        logger.info("%s: loaded %d HTTP settings from %s", self._config.port_name, len(entries), path)
        return entries

    def report(self, fp: IO[str] | None = None, details: int = 0) -> None:
        out = fp if fp is not None else sys.stdout
        values = self._store.snapshot()
        print(f"URL Driver {self._config.port_name}", file=out)
        if details <= 0:
            return
        print(f"  URL:               {values[URL_NAME]}", file=out)
        print(f"  NX, NY:            {values[SIZE_X]}  {values[SIZE_Y]}", file=out)
        print(f"  Data type:         {values[DATA_TYPE].value}", file=out)
        print(f"  Color mode:        {values[COLOR_MODE].value}", file=out)
        print(f"  Status:            {values[STATUS].value}", file=out)
        print(f"  Image mode:        {values[IMAGE_MODE].value}", file=out)
        print(f"  Frames (run/all):  {values[NUM_IMAGES_COUNTER]}/{values[ARRAY_COUNTER]}", file=out)
        if values[STATUS_MESSAGE]:
            print(f"  Last error:        {values[STATUS_MESSAGE]}", file=out)
        if details > 1:
            print(f"  Manufacturer:      {values[MANUFACTURER]}", file=out)
            print(f"  Model:             {values[MODEL]}", file=out)
            print(f"  Serial number:     {values[SERIAL_NUMBER]}", file=out)
            print(f"  Firmware:          {values[FIRMWARE_VERSION]}", file=out)
            print(f"  Driver version:    {values[DRIVER_VERSION]}", file=out)
            print(f"  SDK version:       {values[SDK_VERSION]}", file=out)
            print(
                f"  Thread:            priority={self._config.priority} "
                f"stack_size={self._config.stack_size}",
                file=out,
            )
            print(
                f"  Frame pool:        {self._pool.num_buffers} buffers, "
                f"{self._pool.memory_in_use} bytes "
                f"(max {self._pool.max_buffers} / {self._pool.max_memory})",
                file=out,
            )
            if self._http is not None:
                print(
                    f"  HTTP:              use={values[USE_HTTP]} auth={values[HTTP_AUTH].value} "
                    f"user={values[HTTP_USERNAME]!r} verify_peer={values[SSL_VERIFY_PEER]} "
                    f"verify_host={values[SSL_VERIFY_HOST]}",
                    file=out,
                )

    def close(self) -> None:
        self._controller.shutdown()
        close = getattr(self._http, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> "UrlDriver":
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.close()
