from __future__ import annotations

import threading
from typing import Any

import numpy as np

from .errors import DecodeFailedError, PoolExhaustedError, UnsupportedDepthError, UnsupportedLayoutError
from .interfaces import ColorMode, DataType, DecodedImage, ImageLayout


NUMPY_DTYPES = {
    DataType.UINT8: np.uint8,
    DataType.UINT16: np.uint16,
    DataType.UINT32: np.uint32,
}

_DEPTH_DATA_TYPES = {
    1: DataType.UINT8,
    8: DataType.UINT8,
    16: DataType.UINT16,
    32: DataType.UINT32,
}


def data_type_for_depth(bits_per_channel: int) -> DataType:
    try:
        return _DEPTH_DATA_TYPES[bits_per_channel]
    except KeyError:
        raise UnsupportedDepthError(f"unsupported depth={bits_per_channel}") from None


class Frame:
    """Reference-counted image buffer handed to frame subscribers.

    `dims` lists dimensions fastest-varying first: `[columns, rows]` for
    mono frames and `[3, columns, rows]` for RGB1 frames. `data` holds the
    same samples as a C-ordered numpy array, so `data.shape` is `dims`
    reversed, e.g. `(rows, columns, 3)`.

    A frame starts with one reference owned by whoever allocated it.
    Subscribers that keep a frame beyond their callback call `reserve()`
    and later `release()`.
    """

    def __init__(
        self,
        data: np.ndarray,
        dims: list[int],
        data_type: DataType,
        pool: "FramePool | None" = None,
    ) -> None:
        self.data = data
        self.dims = list(dims)
        self.data_type = data_type
        self.color_mode = ColorMode.MONO
        self.unique_id = 0
        self.timestamp = 0.0
        self.attributes: dict[str, Any] = {}
        self._pool = pool
        self._refcount = 1
        self._lock = threading.Lock()

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def released(self) -> bool:
        return self._refcount == 0

    @property
    def nbytes(self) -> int:
        return int(self.data.nbytes)

    @property
    def element_count(self) -> int:
        return int(self.data.size)

    def reserve(self) -> "Frame":
        with self._lock:
            if self._refcount == 0:
                raise RuntimeError("Cannot reserve a released frame")
            self._refcount += 1
        return self

    def release(self) -> None:
        with self._lock:
            if self._refcount == 0:
                raise RuntimeError("Frame already released")
            self._refcount -= 1
            freed = self._refcount == 0
        if freed and self._pool is not None:
            self._pool._free(self)  # noqa: SLF001

    def __repr__(self) -> str:
        return (
            f"Frame(id={self.unique_id}, dims={self.dims}, type={self.data_type.value}, "
            f"color={self.color_mode.value}, refcount={self._refcount})"
        )


class FramePool:
    """Allocates frames within optional buffer-count and memory bounds.

    A bound of -1 (or any negative value) means unlimited.
    """

    def __init__(self, max_buffers: int = -1, max_memory: int = -1) -> None:
        self._max_buffers = max_buffers
        self._max_memory = max_memory
        self._num_buffers = 0
        self._memory = 0
        self._lock = threading.Lock()

    @property
    def max_buffers(self) -> int:
        return self._max_buffers

    @property
    def max_memory(self) -> int:
        return self._max_memory

    @property
    def num_buffers(self) -> int:
        return self._num_buffers

    @property
    def memory_in_use(self) -> int:
        return self._memory

    def alloc(self, dims: list[int], data_type: DataType) -> Frame:
        dtype = np.dtype(NUMPY_DTYPES[data_type])
        shape = tuple(reversed(dims))
        nbytes = int(np.prod(shape, dtype=np.int64)) * dtype.itemsize
        with self._lock:
            if 0 <= self._max_buffers <= self._num_buffers:
                raise PoolExhaustedError(
                    f"frame pool exhausted: {self._num_buffers} of {self._max_buffers} buffers in use"
                )
            if 0 <= self._max_memory < self._memory + nbytes:
                raise PoolExhaustedError(
                    f"frame pool exhausted: {nbytes} bytes requested, "
                    f"{self._memory} of {self._max_memory} in use"
                )
            self._num_buffers += 1
            self._memory += nbytes
        return Frame(np.empty(shape, dtype=dtype), dims, data_type, pool=self)

    def _free(self, frame: Frame) -> None:
        with self._lock:
            self._num_buffers -= 1
            self._memory -= frame.nbytes


class FrameSlot:
    """Holds the controller's current frame.

    The previous frame must be released before a new one is installed, so a
    slot never owns more than one buffer.
    """

    def __init__(self) -> None:
        self._frame: Frame | None = None

    @property
    def current(self) -> Frame | None:
        return self._frame

    def release(self) -> None:
        frame, self._frame = self._frame, None
        if frame is not None:
            frame.release()

    def install(self, frame: Frame) -> None:
        if self._frame is not None:
            raise RuntimeError("Frame slot is occupied; release the current frame first")
        self._frame = frame


def build_frame(decoded: DecodedImage, pool: FramePool) -> Frame:
    """Shape decoded samples into a newly allocated frame."""

    data_type = data_type_for_depth(decoded.bits_per_channel)
    width, height = decoded.width, decoded.height
    if decoded.layout is ImageLayout.GRAYSCALE:
        dims = [width, height]
        color_mode = ColorMode.MONO
    elif decoded.layout is ImageLayout.TRUECOLOR:
        dims = [3, width, height]
        color_mode = ColorMode.RGB1
    else:
        raise UnsupportedLayoutError(f"unsupported image layout {decoded.layout!r}")

    dtype = np.dtype(NUMPY_DTYPES[data_type])
    expected = width * height * decoded.channels * dtype.itemsize
    if len(decoded.pixels) != expected:
        raise DecodeFailedError(
            f"pixel payload has {len(decoded.pixels)} bytes, expected {expected} "
            f"for dims={dims} type={data_type.value}"
        )

    frame = pool.alloc(dims, data_type)
    frame.data[...] = np.frombuffer(decoded.pixels, dtype=dtype).reshape(frame.data.shape)
    frame.color_mode = color_mode
    frame.attributes["ColorMode"] = color_mode
    return frame
