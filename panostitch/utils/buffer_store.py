"""
Image buffer store

Validates caller buffers and copies them into one contiguous arena so the
rest of the pipeline works on read-only views without further copies.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import psutil

from panostitch.core.errors import InputError
from panostitch.core.types import COLOR_FORMATS, Image

logger = logging.getLogger(__name__)

# Internal pixel layout of every stored frame
INTERNAL_COLOR_SPACE = 'BGR'
INTERNAL_CHANNELS = 3

_TO_BGR = {
    'GRAY': cv2.COLOR_GRAY2BGR,
    'RGB': cv2.COLOR_RGB2BGR,
    'RGBA': cv2.COLOR_RGBA2BGR,
    'BGRA': cv2.COLOR_BGRA2BGR,
}


class ImageBuffer:
    """Decoded image as handed over by the caller"""

    def __init__(self, data: Union[np.ndarray, bytes, bytearray, memoryview],
                 width: int, height: int, color_format: Optional[str] = None):
        self.data = data
        self.width = width
        self.height = height
        self.color_format = color_format

    @classmethod
    def from_array(cls, array: np.ndarray, color_format: str = 'RGB') -> 'ImageBuffer':
        height, width = array.shape[:2]
        return cls(array, width, height, color_format)

    def __repr__(self) -> str:
        return f"ImageBuffer({self.width}x{self.height}, {self.color_format})"


def _process_rss_mb() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


class ImageBufferStore:
    """Owns the pixel memory of all ingested frames"""

    def __init__(self):
        self._arena: Optional[np.ndarray] = None
        self._images: Dict[int, Image] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def __len__(self) -> int:
        return len(self._images)

    @property
    def images(self) -> List[Image]:
        return [self._images[k] for k in sorted(self._images)]

    @property
    def nbytes(self) -> int:
        return 0 if self._arena is None else self._arena.nbytes

    def view(self, index: int) -> Image:
        """Read-only view of the frame ingested at the given source index"""
        if index not in self._images:
            raise KeyError(f"No image with index {index} in store")
        return self._images[index]

    def ingest(self, buffers: Sequence[ImageBuffer],
               default_color_format: str = 'RGB') -> Tuple[List[Image], List[InputError]]:
        """
        Validate buffers and copy the valid ones into the arena

        Args:
            buffers: Caller buffers, indexed by position
            default_color_format: Format tag for buffers that carry none

        Returns:
            Tuple of (images, errors); invalid buffers become InputError records
        """
        self.release()

        frames: List[Tuple[int, np.ndarray, str]] = []
        errors: List[InputError] = []
        for index, buffer in enumerate(buffers):
            try:
                frame, color_format = self._validate(index, buffer, default_color_format)
                frames.append((index, frame, color_format))
            except InputError as e:
                logger.warning(f"Rejected image {index}: {e.message}")
                errors.append(e)

        if not frames:
            return [], errors

        rss_before = _process_rss_mb()
        total = sum(f.shape[0] * f.shape[1] * INTERNAL_CHANNELS for _, f, _ in frames)
        self._arena = np.empty(total, dtype=np.uint8)

        offset = 0
        for index, frame, color_format in frames:
            h, w = frame.shape[:2]
            size = h * w * INTERNAL_CHANNELS
            view = self._arena[offset:offset + size].reshape(h, w, INTERNAL_CHANNELS)
            self._to_internal(frame, color_format, view)
            view.setflags(write=False)
            self._images[index] = Image(view, w, h, INTERNAL_CHANNELS, INTERNAL_COLOR_SPACE, index)
            offset += size

        logger.info(f"Ingested {len(frames)} of {len(buffers)} images "
                    f"({self._arena.nbytes / (1024 * 1024):.1f} MB arena, "
                    f"process RSS {rss_before:.0f} -> {_process_rss_mb():.0f} MB)")
        return self.images, errors

    def release(self):
        """Drop all frames; views handed out earlier keep their memory alive"""
        self._images = {}
        self._arena = None

    def _validate(self, index: int, buffer: ImageBuffer,
                  default_color_format: str) -> Tuple[np.ndarray, str]:
        if buffer is None or buffer.data is None:
            raise InputError("image buffer is empty", [index])

        color_format = (buffer.color_format or default_color_format).upper()
        if color_format not in COLOR_FORMATS:
            raise InputError(f"unsupported color format {color_format!r}", [index])
        channels = COLOR_FORMATS[color_format]

        width, height = buffer.width, buffer.height
        if not isinstance(width, (int, np.integer)) or not isinstance(height, (int, np.integer)) \
                or width <= 0 or height <= 0:
            raise InputError(f"invalid dimensions {width}x{height}", [index])

        data = buffer.data
        if isinstance(data, (bytes, bytearray, memoryview)):
            expected = width * height * channels
            if len(data) == 0:
                raise InputError("image buffer is empty", [index])
            if len(data) != expected:
                raise InputError(f"buffer holds {len(data)} bytes, expected {expected} "
                                 f"for {width}x{height} {color_format}", [index])
            array = np.frombuffer(data, dtype=np.uint8)
            shape = (height, width) if channels == 1 else (height, width, channels)
            return array.reshape(shape), color_format

        if not isinstance(data, np.ndarray):
            raise InputError(f"unsupported buffer type {type(data).__name__}", [index])
        if data.size == 0:
            raise InputError("image buffer is empty", [index])
        if data.dtype != np.uint8:
            raise InputError(f"expected uint8 pixels, got {data.dtype}", [index])
        if data.shape[:2] != (height, width):
            raise InputError(f"array shape {data.shape[:2]} does not match "
                             f"declared size {height}x{width}", [index])

        actual_channels = 1 if data.ndim == 2 else data.shape[2] if data.ndim == 3 else -1
        if data.ndim == 3 and data.shape[2] == 1 and channels == 1:
            actual_channels = 1
            data = data[:, :, 0]
        if actual_channels != channels:
            raise InputError(f"{actual_channels} channels do not match format {color_format}", [index])
        return data, color_format

    @staticmethod
    def _to_internal(frame: np.ndarray, color_format: str, out: np.ndarray):
        """Convert a validated frame to BGR inside the arena"""
        code = _TO_BGR.get(color_format)
        if code is None:
            np.copyto(out, frame)
        else:
            np.copyto(out, cv2.cvtColor(np.ascontiguousarray(frame), code))
