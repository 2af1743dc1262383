from __future__ import annotations

import logging
from io import BytesIO
from typing import Dict

import numpy as np
import rasterio
from PIL import Image
from rasterio.enums import Resampling
from rasterio.errors import RasterioError, RasterioIOError
from rasterio.windows import Window, from_bounds

from subsetter import BackendFailureError, DatasetOpenError, ExtractionRequest, SourceWindow

DEFAULT_JPEG_QUALITY = 75
LOGGER = logging.getLogger("raster_subsetter.raster_engine")


class JpegArtifact:
    """Encoded image kept in memory until the response has been sent."""

    def __init__(self, data: bytes) -> None:
        self._buffer: BytesIO | None = BytesIO(data)
        self.size = len(data)

    @property
    def closed(self) -> bool:
        return self._buffer is None

    def read(self, size: int = -1) -> bytes:
        if self._buffer is None:
            raise ValueError("I/O operation on released artifact")
        return self._buffer.read(size)

    def close(self) -> None:
        if self._buffer is not None:
            self._buffer.close()
            self._buffer = None


class RasterioEngine:
    """Opens datasets with rasterio and renders source windows to JPEG."""

    def __init__(self, gdal_options: Dict[str, str] | None = None, jpeg_quality: int = DEFAULT_JPEG_QUALITY) -> None:
        self.gdal_options = dict(gdal_options or {})
        self.jpeg_quality = int(jpeg_quality)

    def open(self, path: str):
        try:
            with rasterio.Env(**self.gdal_options):
                return rasterio.open(path)
        except RasterioIOError as exc:
            raise DatasetOpenError(str(exc)) from exc

    def extract(self, handle, request: ExtractionRequest) -> JpegArtifact:
        if request.output_format != "image/jpeg":
            raise BackendFailureError(f"Unsupported output format {request.output_format}")
        try:
            with rasterio.Env(**self.gdal_options):
                window, boundless = self.source_window_for(handle, request)
                out_width, out_height = self.output_size_for(window, request.output_width, request.output_height)
                LOGGER.debug(
                    "Read path=%s window=%s out=%sx%s", handle.name, self.window_as_source(window), out_width, out_height
                )
                data = self._read(handle, window, boundless, out_width, out_height)
        except RasterioError as exc:
            LOGGER.warning("Raster read failed path=%s: %s", handle.name, exc)
            raise BackendFailureError("Raster read failure") from exc
        return JpegArtifact(self._encode_jpeg(data))

    @staticmethod
    def source_window_for(handle, request: ExtractionRequest) -> tuple[Window, bool]:
        if request.source_window is not None:
            src = request.source_window
            return Window(src.x, src.y, src.width, src.height), False

        min_x, min_y, max_x, max_y = request.projection_window
        bounds_window = from_bounds(min_x, min_y, max_x, max_y, transform=handle.transform)
        col_off = int(round(bounds_window.col_off))
        row_off = int(round(bounds_window.row_off))
        width = int(round(bounds_window.width))
        height = int(round(bounds_window.height))
        if width <= 0 or height <= 0:
            raise BackendFailureError("Computed window is empty")
        if col_off >= handle.width or row_off >= handle.height or col_off + width <= 0 or row_off + height <= 0:
            raise BackendFailureError("Computed window falls completely outside raster extent")
        inside = col_off >= 0 and row_off >= 0 and col_off + width <= handle.width and row_off + height <= handle.height
        return Window(col_off, row_off, width, height), not inside

    @staticmethod
    def output_size_for(window: Window, width: int, height: int) -> tuple[int, int]:
        # A zero axis follows the other one, keeping the window aspect ratio.
        if width == 0:
            width = max(1, int(round(height * window.width / window.height)))
        elif height == 0:
            height = max(1, int(round(width * window.height / window.width)))
        return width, height

    @staticmethod
    def window_as_source(window: Window) -> SourceWindow:
        return SourceWindow(
            x=int(window.col_off),
            y=int(window.row_off),
            width=int(window.width),
            height=int(window.height),
        )

    def _read(self, handle, window: Window, boundless: bool, out_width: int, out_height: int) -> np.ndarray:
        if any(dtype != "uint8" for dtype in handle.dtypes):
            raise BackendFailureError(f"JPEG output needs 8-bit bands, dataset has {handle.dtypes[0]}")
        indexes = [1, 2, 3] if handle.count >= 3 else [1]
        return handle.read(
            indexes,
            window=window,
            out_shape=(len(indexes), out_height, out_width),
            resampling=Resampling.nearest,
            boundless=boundless,
            fill_value=0,
        )

    def _encode_jpeg(self, data: np.ndarray) -> bytes:
        if data.shape[0] == 1:
            image = Image.fromarray(data[0])
        else:
            image = Image.fromarray(np.ascontiguousarray(np.transpose(data, (1, 2, 0))))
        buf = BytesIO()
        image.save(buf, format="JPEG", quality=self.jpeg_quality)
        return buf.getvalue()
