from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .errors import FetchError, PoolExhaustedError, ResourceError
from .frame import Frame, FramePool, FrameSlot, build_frame
from .interfaces import DetectorStatus, ImageMode, ImageSourceInterface, ShutterState
from .parameters import (
    ACQUIRE,
    ACQUIRE_PERIOD,
    ARRAY_CALLBACKS,
    ARRAY_COUNTER,
    ARRAY_SIZE,
    ARRAY_SIZE_X,
    ARRAY_SIZE_Y,
    COLOR_MODE,
    DATA_TYPE,
    IMAGE_MODE,
    NUM_IMAGES,
    NUM_IMAGES_COUNTER,
    SHUTTER,
    SIZE_X,
    SIZE_Y,
    STATUS,
    STATUS_MESSAGE,
    URL_NAME,
    ParameterStore,
)
from .signals import BinarySignal

logger = logging.getLogger(__name__)

# Shortest inter-frame wait; the settings lock is released between frames
# even when a fetch overruns the acquire period.
MIN_DELAY_S = 0.001

ARRAY_DATA = "array_data"

FrameCallback = Callable[[Frame, str], None]


class AcquisitionController:
    """Background acquisition task for a URL-addressed detector.

    One loop implements single, multiple and continuous image modes:

    1) While `ACQUIRE` is false, report Idle and sleep on the start signal.
    2) Fetch and decode an image between shutter-open/close markers.
    3) Count, stamp and publish the frame; end the run on failure, after a
       single image, or after `NUM_IMAGES` images in multiple mode.
    4) Sleep for the rest of the acquire period or until the stop signal.

    The settings lock is held throughout and released only while waiting
    on a signal.
    """

    def __init__(
        self,
        settings: ParameterStore,
        pool: FramePool,
        select_source: Callable[[], ImageSourceInterface],
        start_signal: BinarySignal,
        stop_signal: BinarySignal,
        *,
        name: str = "URLDriverTask",
        stack_size: int = 0,
    ) -> None:
        self._settings = settings
        self._pool = pool
        self._select_source = select_source
        self._start = start_signal
        self._stop = stop_signal
        self._name = name
        self._stack_size = stack_size
        self._slot = FrameSlot()
        self._subscribers: list[FrameCallback] = []
        self._thread: threading.Thread | None = None
        self._shutdown_evt = threading.Event()
        self._last_error: Exception | None = None
        self._last_delay_s: float | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def last_delay_s(self) -> float | None:
        return self._last_delay_s

    @property
    def current_frame(self) -> Frame | None:
        with self._settings:
            return self._slot.current

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, callback: FrameCallback) -> None:
        with self._settings:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: FrameCallback) -> None:
        with self._settings:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def start(self) -> None:
        if self.is_running:
            return
        self._shutdown_evt.clear()
        thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        previous_stack_size: int | None = None
        try:
            if self._stack_size > 0:
                previous_stack_size = threading.stack_size(self._stack_size)
            thread.start()
        except (RuntimeError, ValueError) as exc:
            raise ResourceError(f"{self._name}: failed to create acquisition thread: {exc}") from exc
        finally:
            if previous_stack_size is not None:
                threading.stack_size(previous_stack_size)
        self._thread = thread

    def shutdown(self, *, wait: bool = True, timeout: float = 2.0) -> None:
        self._shutdown_evt.set()
        self._start.signal()
        self._stop.signal()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        with self._settings:
            self._slot.release()

    def _run(self) -> None:
        lock = self._settings.lock
        lock.acquire()
        try:
            while not self._shutdown_evt.is_set():
                if not self._settings.get(ACQUIRE):
                    self._wait_for_start()
                    continue

                started = time.monotonic()
                period = self._settings.get(ACQUIRE_PERIOD)
                try:
                    acquiring = self._acquire_once()
                except Exception as exc:
                    logger.exception("%s: acquisition iteration failed", self._name)
                    self._last_error = exc
                    self._settings.set(STATUS_MESSAGE, f"Acquisition task error: {exc}")
                    self._settings.set(SHUTTER, ShutterState.CLOSED)
                    self._settings.set(ACQUIRE, False)
                    self._settings.publish()
                    acquiring = False

                if acquiring:
                    self._wait_period(period - (time.monotonic() - started))
        finally:
            lock.release()

    def _wait_for_start(self) -> None:
        self._settings.set(STATUS, DetectorStatus.IDLE)
        self._settings.publish()
        logger.debug("%s: waiting for acquire to start", self._name)
        lock = self._settings.lock
        lock.release()
        try:
            self._start.wait()
        finally:
            lock.acquire()
        if self._shutdown_evt.is_set():
            return
        self._settings.set(NUM_IMAGES_COUNTER, 0)
        self._settings.set(STATUS_MESSAGE, "")
        # A stop requested during the previous run must not cut this one short.
        self._stop.clear()

    def _acquire_once(self) -> bool:
        """Run one fetch/publish step; returns whether the run continues."""

        settings = self._settings
        started_wall = time.time()

        settings.set(STATUS, DetectorStatus.ACQUIRE)
        settings.set(SHUTTER, ShutterState.OPEN)
        settings.publish()

        frame: Frame | None = None
        try:
            frame = self._read_image()
        except (FetchError, PoolExhaustedError) as exc:
            logger.error("%s: error reading URL=%r: %s", self._name, settings.get(URL_NAME), exc)
            settings.set(STATUS_MESSAGE, str(exc))

        settings.set(SHUTTER, ShutterState.CLOSED)
        settings.publish()

        image_mode = settings.get(IMAGE_MODE)
        run_count = settings.get(NUM_IMAGES_COUNTER)
        if frame is not None:
            counter = settings.get(ARRAY_COUNTER) + 1
            run_count += 1
            settings.set(ARRAY_COUNTER, counter)
            settings.set(NUM_IMAGES_COUNTER, run_count)

            frame.unique_id = counter
            frame.timestamp = started_wall

            if settings.get(ARRAY_CALLBACKS):
                logger.debug("%s: calling frame callbacks for id=%d", self._name, counter)
                self._publish_frame(frame)

        if (
            frame is None
            or image_mode is ImageMode.SINGLE
            or (image_mode is ImageMode.MULTIPLE and run_count >= settings.get(NUM_IMAGES))
        ):
            settings.set(ACQUIRE, False)
            logger.debug("%s: acquisition completed", self._name)

        settings.publish()
        return settings.get(ACQUIRE)

    def _read_image(self) -> Frame:
        settings = self._settings
        url = settings.get(URL_NAME)
        decoded = self._select_source().fetch(url)

        self._slot.release()
        frame = build_frame(decoded, self._pool)
        self._slot.install(frame)
        logger.debug(
            "%s: read URL=%s, dims=%s, layout=%s, depth=%d",
            self._name,
            url,
            frame.dims,
            decoded.layout.value,
            decoded.bits_per_channel,
        )

        settings.set(SIZE_X, decoded.width)
        settings.set(SIZE_Y, decoded.height)
        settings.set(ARRAY_SIZE_X, decoded.width)
        settings.set(ARRAY_SIZE_Y, decoded.height)
        settings.set(ARRAY_SIZE, frame.nbytes)
        settings.set(DATA_TYPE, frame.data_type)
        settings.set(COLOR_MODE, frame.color_mode)
        return frame

    def _publish_frame(self, frame: Frame) -> None:
        for callback in list(self._subscribers):
            try:
                callback(frame, ARRAY_DATA)
            except Exception:
                logger.exception("%s: frame subscriber %r failed", self._name, callback)

    def _wait_period(self, delay_s: float) -> None:
        logger.debug("%s: delay=%f", self._name, delay_s)
        if delay_s < MIN_DELAY_S:
            delay_s = MIN_DELAY_S
        self._last_delay_s = delay_s

        self._settings.set(STATUS, DetectorStatus.WAITING)
        self._settings.publish()
        lock = self._settings.lock
        lock.release()
        try:
            self._stop.wait_timeout(delay_s)
        finally:
            lock.acquire()
