from __future__ import annotations

import os
import threading

import numpy as np

from .driver import UrlDriver
from .frame import Frame
from .parameters import ARRAY_COUNTER, STATUS, STATUS_MESSAGE, URL_NAME


class LatestFrameHolder:
    """Frame subscriber that keeps the newest frame for a display loop.

    The held frame is reserved so the driver can replace its own current
    frame while the display still reads this one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frame: Frame | None = None
        self._shown_id = 0

    @property
    def frame(self) -> Frame | None:
        return self._frame

    def __call__(self, frame: Frame, _channel: str) -> None:
        frame.reserve()
        with self._lock:
            previous, self._frame = self._frame, frame
        if previous is not None:
            previous.release()

    def take_new(self) -> np.ndarray | None:
        """Copy of the newest frame's samples, or None if already taken."""

        with self._lock:
            frame = self._frame
            if frame is None or frame.unique_id == self._shown_id:
                return None
            self._shown_id = frame.unique_id
            return frame.data.copy()

    def close(self) -> None:
        with self._lock:
            frame, self._frame = self._frame, None
        if frame is not None:
            frame.release()


def _prepare_napari_environment() -> None:
    """Disable third-party napari plugin discovery for a stable live view."""
    os.environ.setdefault("NAPARI_DISABLE_PLUGINS", "1")
    os.environ.setdefault("NAPARI_DISABLE_PLUGIN_ENTRY_POINTS", "1")
    os.environ.setdefault("NAPARI_DISABLE_PLUGIN_ENTRYPOINTS", "1")


def status_line(driver: UrlDriver) -> str:
    text = (
        f"{driver.read(STATUS).value} | frames={driver.read(ARRAY_COUNTER)} | "
        f"{driver.read(URL_NAME) or '<no URL>'}"
    )
    message = driver.read(STATUS_MESSAGE)
    if message:
        text += f"\n{message}"
    return text


def launch_live_viewer(driver: UrlDriver, interval_ms: int = 50) -> None:
    """Show frames published by `driver` in a napari window until it closes.

    Press `Escape` to close the window.
    """

    _prepare_napari_environment()

    try:
        import napari
        from qtpy.QtCore import QTimer
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "napari is required for the live viewer. Install with: pip install 'url-detector[viewer]'"
        ) from exc

    holder = LatestFrameHolder()
    driver.subscribe(holder)

    viewer = napari.Viewer(title=f"URL Driver {driver.config.port_name}")
    status_text = viewer.text_overlay
    status_text.visible = True
    status_text.position = "top_left"
    status_text.font_size = 12
    status_text.text = status_line(driver)

    state: dict = {"layer": None}

    def _refresh() -> None:
        image = holder.take_new()
        if image is not None:
            rgb = image.ndim == 3
            layer = state["layer"]
            if layer is None or layer.rgb != rgb:
                if layer is not None:
                    viewer.layers.remove(layer)
                state["layer"] = viewer.add_image(image, name="url", rgb=rgb, blending="opaque")
            else:
                layer.data = image
        status_text.text = status_line(driver)

    timer = QTimer()
    timer.timeout.connect(_refresh)
    timer.start(max(1, int(interval_ms)))

    @viewer.bind_key("Escape")
    def _quit(viewer_ref):  # noqa: ARG001
        viewer_ref.close()

    viewer.window._url_detector_timer = timer  # type: ignore[attr-defined]
    try:
        napari.run()
    finally:
        driver.unsubscribe(holder)
        holder.close()
