from __future__ import annotations

import html
import logging
import math
import os
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from importlib.util import module_from_spec, spec_from_file_location
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Protocol, Tuple

from dotenv import dotenv_values

MAX_OUTPUT_SIZE = 2048
FALLBACK_OUTPUT_SIZE = 1024
GEOGRAPHIC_DEFAULT_BBOX = (-180.0, -90.0, 180.0, 90.0)
OUTPUT_FORMAT = "image/jpeg"
QUERY_HANDLER_NAME = "query_handler"
CONFIG_SUFFIX = ".config"
SCRIPT_SUFFIX = ".py"
RESPONSE_CHUNK_SIZE = 64 * 1024
HTML_ERRORS = {
    400: "Bad Request",
    404: "Not Found",
    500: "Internal Server error",
}
_SIZE_PATTERN = re.compile(r"\s*\+?(\d+),\s*\+?(\d+)")
LOGGER = logging.getLogger("raster_subsetter.subsetter")


class SubsetError(Exception):
    """Base class for failures that end a single subset request."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ClientInputError(SubsetError):
    """Raised for a bad or missing size, bbox or identifier."""

    status_code = 400


class MissingIdentifierError(ClientInputError):
    pass


class OutOfRangeError(ClientInputError):
    pass


class DatasetNotFoundError(SubsetError):
    status_code = 404


class InvalidScriptResultError(SubsetError):
    status_code = 404


class ConfigurationError(SubsetError):
    """Raised when no resolution mode can be established."""


class ScriptExecutionError(SubsetError):
    pass


class BackendFailureError(SubsetError):
    """Raised when the raster engine cannot produce an image."""


class DatasetOpenError(Exception):
    """Raised by a raster engine when a path cannot be opened."""


class BBoxOutcome(str, Enum):
    OK = "ok"
    MALFORMED = "malformed"
    REVERSED = "reversed"


BBox = Tuple[float, float, float, float]


@dataclass(frozen=True)
class BBoxParse:
    values: Tuple[float, ...]
    count: int
    outcome: BBoxOutcome

    @property
    def ok(self) -> bool:
        return self.outcome is BBoxOutcome.OK

    @property
    def bbox(self) -> BBox:
        if not self.ok:
            raise ValueError(f"bbox did not parse: {self.outcome.value}")
        return (self.values[0], self.values[1], self.values[2], self.values[3])


@dataclass(frozen=True)
class SourceWindow:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class ExtractionRequest:
    output_width: int
    output_height: int
    source_window: SourceWindow | None = None
    projection_window: BBox | None = None
    output_format: str = OUTPUT_FORMAT

    def __post_init__(self) -> None:
        if (self.source_window is None) == (self.projection_window is None):
            raise ValueError("Exactly one of source_window or projection_window must be set")


@dataclass(frozen=True)
class StaticConfig:
    dataset_path: str


@dataclass(frozen=True)
class TemplatedConfig:
    prefix: str
    suffix: str

    def path_for(self, identifier: str) -> str:
        return f"{self.prefix}{identifier}{self.suffix}"


@dataclass(frozen=True)
class ScriptedConfig:
    script_path: str
    query_handler: Callable[[str], object] = field(compare=False)


SubsetConfig = StaticConfig | TemplatedConfig | ScriptedConfig


class RasterHandle(Protocol):
    width: int
    height: int

    def close(self) -> None: ...


class ImageArtifact(Protocol):
    def read(self, size: int = -1) -> bytes: ...

    def close(self) -> None: ...


class RasterEngine(Protocol):
    def open(self, path: str) -> RasterHandle: ...

    def extract(self, handle: RasterHandle, request: ExtractionRequest) -> ImageArtifact: ...


def parse_bbox(text: str) -> BBoxParse:
    values: List[float] = []
    for token in str(text).split(","):
        if len(values) == 4:
            break
        try:
            value = float(token)
        except ValueError:
            break
        if not math.isfinite(value):
            break
        values.append(value)

    if len(values) < 4:
        return BBoxParse(values=tuple(values), count=len(values), outcome=BBoxOutcome.MALFORMED)
    min_x, min_y, max_x, max_y = values
    if max_x <= min_x or max_y <= min_y:
        # 1 flags a reversed X axis, 0 a reversed Y axis only.
        return BBoxParse(values=tuple(values), count=int(max_x <= min_x), outcome=BBoxOutcome.REVERSED)
    return BBoxParse(values=tuple(values), count=4, outcome=BBoxOutcome.OK)


def parse_size(text: str | None) -> Tuple[int, int]:
    if not text:
        raise ClientInputError("Missing size parameter")
    match = _SIZE_PATTERN.match(text)
    if match is None:
        raise ClientInputError("Can't parse size")
    width, height = int(match.group(1)), int(match.group(2))
    if width == 0 and height == 0:
        raise ClientInputError("Can't parse size")
    return width, height


def clamp_output_size(width: int, height: int) -> Tuple[int, int]:
    if width > MAX_OUTPUT_SIZE or height > MAX_OUTPUT_SIZE:
        return FALLBACK_OUTPUT_SIZE, FALLBACK_OUTPUT_SIZE
    return width, height


def compute_window(bbox: BBox | None, dataset_width: int, dataset_height: int) -> SourceWindow:
    if bbox is None:
        bbox = (0, 0, dataset_width, dataset_height)
    min_x, min_y, max_x, max_y = (int(v) for v in bbox)
    if min_x < 0 or min_y < 0 or max_x > dataset_width or max_y > dataset_height:
        raise OutOfRangeError("Bad bbox values")
    if max_x <= min_x or max_y <= min_y:
        raise OutOfRangeError("Bad bbox values")
    return SourceWindow(
        x=min_x,
        y=dataset_height - max_y,
        width=max_x - min_x,
        height=max_y - min_y,
    )


class DatasetSlot:
    """Keeps at most one dataset open, reused while the path stays the same."""

    def __init__(self, engine: RasterEngine) -> None:
        self._engine = engine
        self.path = ""
        self.handle: RasterHandle | None = None

    def open(self, path: str) -> bool:
        if path and path == self.path:
            return self.handle is not None
        self.clear()
        try:
            handle = self._engine.open(path)
        except DatasetOpenError as exc:
            LOGGER.warning("Dataset open failed path=%s: %s", path, exc)
            return False
        self.path = path
        self.handle = handle
        LOGGER.info("Dataset opened path=%s size=%sx%s", path, handle.width, handle.height)
        return True

    def clear(self) -> None:
        if self.handle is None:
            return
        handle, path = self.handle, self.path
        self.handle = None
        self.path = ""
        handle.close()
        LOGGER.info("Dataset closed path=%s", path)


@dataclass(frozen=True)
class ResolvedTarget:
    path: str
    handle: RasterHandle
    identifier: str | None = None


class StaticResolver:
    pixel_window = False

    def __init__(self, config: StaticConfig) -> None:
        self.config = config

    def prepare(self, slot: DatasetSlot) -> None:
        if not slot.open(self.config.dataset_path):
            raise ConfigurationError(f'Can\'t open file named "{self.config.dataset_path}"')

    def resolve(self, params: Mapping[str, str], query_string: str, slot: DatasetSlot) -> ResolvedTarget:
        if not slot.open(self.config.dataset_path) or slot.handle is None:
            LOGGER.error("Single dataset not open path=%s", self.config.dataset_path)
            raise ConfigurationError("dataset failure")
        return ResolvedTarget(path=slot.path, handle=slot.handle)


class TemplatedResolver:
    pixel_window = True

    def __init__(self, config: TemplatedConfig) -> None:
        self.config = config

    def prepare(self, slot: DatasetSlot) -> None:
        return None

    def resolve(self, params: Mapping[str, str], query_string: str, slot: DatasetSlot) -> ResolvedTarget:
        identifier = params.get("ID") or ""
        if not identifier:
            raise MissingIdentifierError("Missing ID element")
        path = self.config.path_for(identifier)
        if not slot.open(path) or slot.handle is None:
            raise DatasetNotFoundError("No such dataset")
        return ResolvedTarget(path=path, handle=slot.handle, identifier=identifier)


class ScriptedResolver:
    pixel_window = True

    def __init__(self, config: ScriptedConfig) -> None:
        self.config = config

    def prepare(self, slot: DatasetSlot) -> None:
        return None

    def resolve(self, params: Mapping[str, str], query_string: str, slot: DatasetSlot) -> ResolvedTarget:
        try:
            path = self.config.query_handler(query_string)
        except Exception as exc:
            LOGGER.warning("Query handler failed script=%s: %s", self.config.script_path, exc)
            raise ScriptExecutionError("Raster lookup failure") from exc
        if not isinstance(path, str):
            LOGGER.warning("Query handler returned %s, expected str", type(path).__name__)
            raise InvalidScriptResultError("Invalid raster request")
        if not slot.open(path) or slot.handle is None:
            raise DatasetNotFoundError("No such dataset")
        return ResolvedTarget(path=path, handle=slot.handle, identifier=params.get("ID"))


DatasetResolver = StaticResolver | TemplatedResolver | ScriptedResolver


def build_resolver(config: SubsetConfig) -> DatasetResolver:
    if isinstance(config, StaticConfig):
        return StaticResolver(config)
    if isinstance(config, TemplatedConfig):
        return TemplatedResolver(config)
    if isinstance(config, ScriptedConfig):
        return ScriptedResolver(config)
    raise ConfigurationError("Configuration failure")


def load_query_handler(script_path: Path) -> Callable[[str], object]:
    spec = spec_from_file_location(f"subsetter_query_script_{script_path.stem}", script_path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"Can't read {script_path} as a query script")
    module = module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise ConfigurationError(f"Can't read {script_path} as a query script") from exc
    handler = getattr(module, QUERY_HANDLER_NAME, None)
    if not callable(handler):
        raise ConfigurationError(f"Invalid query script {script_path}: no {QUERY_HANDLER_NAME}()")
    return handler


def load_configuration(base: str | Path) -> SubsetConfig:
    base = str(base)
    config_path = Path(base + CONFIG_SUFFIX)
    if not config_path.is_file():
        script_path = Path(base + SCRIPT_SUFFIX)
        if not script_path.is_file():
            raise ConfigurationError(f"No configuration found for {base}")
        LOGGER.info("Using query script %s", script_path)
        return ScriptedConfig(script_path=str(script_path), query_handler=load_query_handler(script_path))

    values = dotenv_values(config_path, interpolate=False)
    filename = (values.get("Filename") or "").strip()
    if filename:
        LOGGER.info("Using single dataset %s", filename)
        return StaticConfig(dataset_path=filename)
    prefix = values.get("DPrefix") or ""
    suffix = values.get("DSuffix") or ""
    LOGGER.info("Using ID datasets prefix=%s suffix=%s", prefix, suffix)
    return TemplatedConfig(prefix=prefix, suffix=suffix)


class SubsetResponse:
    """A status, content type and body, with the image artifact released once sent."""

    def __init__(
        self,
        status_code: int,
        content_type: str,
        body: bytes = b"",
        artifact: ImageArtifact | None = None,
        raw: bool = False,
    ) -> None:
        self.status_code = status_code
        self.content_type = content_type
        self.body = body
        self.raw = raw
        self._artifact = artifact

    @property
    def reason(self) -> str:
        if self.status_code == 200:
            return "OK"
        return HTML_ERRORS[self.status_code]

    def iter_chunks(self) -> Iterator[bytes]:
        try:
            if self.body:
                yield self.body
            if self._artifact is not None:
                while True:
                    chunk = self._artifact.read(RESPONSE_CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
        finally:
            self.close()

    def read_all(self) -> bytes:
        return b"".join(self.iter_chunks())

    def close(self) -> None:
        artifact, self._artifact = self._artifact, None
        if artifact is not None:
            artifact.close()

    def cgi_header(self) -> bytes:
        return (f"Status: {self.status_code} {self.reason}\r\nContent-type: {self.content_type}\r\n\r\n").encode("ascii")


def error_response(message: str, code: int = 404) -> SubsetResponse:
    if code not in HTML_ERRORS:
        code = 404
    reason = HTML_ERRORS[code]
    body = f"<html><h1>{reason}</h1><br>{html.escape(message)}<br></html>\n"
    return SubsetResponse(status_code=code, content_type="text/html", body=body.encode("utf-8"))


class Dispatcher:
    """Turns one query into a JPEG subset of the resolved dataset."""

    def __init__(self, resolver: DatasetResolver, engine: RasterEngine, slot: DatasetSlot | None = None) -> None:
        self.resolver = resolver
        self.engine = engine
        self.slot = slot if slot is not None else DatasetSlot(engine)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: SubsetConfig, engine: RasterEngine) -> "Dispatcher":
        dispatcher = cls(build_resolver(config), engine)
        dispatcher.resolver.prepare(dispatcher.slot)
        return dispatcher

    def handle(self, params: Mapping[str, str], query_string: str = "") -> SubsetResponse:
        try:
            return self._dispatch(params, query_string)
        except SubsetError as exc:
            LOGGER.warning("Subset request failed status=%s query=%s: %s", exc.status_code, query_string, exc.message)
            return error_response(exc.message, exc.status_code)

    def _dispatch(self, params: Mapping[str, str], query_string: str) -> SubsetResponse:
        width, height = clamp_output_size(*parse_size(params.get("size")))

        bbox: BBox | None = None
        if params.get("bbox"):
            parsed = parse_bbox(params["bbox"])
            if not parsed.ok:
                LOGGER.debug("Bbox rejected outcome=%s count=%d", parsed.outcome.value, parsed.count)
                raise ClientInputError("Can't parse bbox")
            bbox = parsed.bbox

        with self._lock:
            target = self.resolver.resolve(params, query_string, self.slot)
            if self.resolver.pixel_window:
                window = compute_window(bbox, target.handle.width, target.handle.height)
                request = ExtractionRequest(output_width=width, output_height=height, source_window=window)
            else:
                request = ExtractionRequest(
                    output_width=width,
                    output_height=height,
                    projection_window=bbox if bbox is not None else GEOGRAPHIC_DEFAULT_BBOX,
                )
            LOGGER.debug("Extract path=%s request=%s", target.path, request)
            artifact = self.engine.extract(target.handle, request)

        return SubsetResponse(
            status_code=200,
            content_type=request.output_format,
            artifact=artifact,
            raw="RAW" in params,
        )

    def debug_page(self, params: Mapping[str, str], query_string: str = "") -> SubsetResponse:
        lines = [
            "<!DOCTYPE html>",
            '<html lang="en" dir="ltr">',
            "<head><title>Raster Subsetter</title></head>",
            "<body>",
            "<h1>debug output</h1>",
            f"QUERY: {html.escape(query_string)}<br>",
        ]
        for key, value in params.items():
            lines.append(f"{html.escape(key)}={html.escape(value)}<br>")
        if not params.get("bbox"):
            lines.append("Can't find bbox<br>")
        parsed = parse_bbox(params.get("bbox", ""))
        values = ", ".join(f"{v:g}" for v in parsed.values)
        lines.append(f"Value {parsed.count} {parsed.outcome.value} [{html.escape(values)}]<br>")
        lines.append(f"Dataset {html.escape(self.slot.path) or '(none)'} open={self.slot.handle is not None}<br>")
        lines.append("</body></html>")
        return SubsetResponse(status_code=200, content_type="text/html", body="\n".join(lines).encode("utf-8"))

    def close(self) -> None:
        with self._lock:
            self.slot.clear()


def config_base_from_env() -> str:
    return os.getenv("SUBSETTER_CONFIG_BASE", "subsetter")


def gdal_options_from_env() -> Dict[str, str]:
    raw = os.getenv("SUBSETTER_GDAL_OPTIONS", "GDAL_DISABLE_READDIR_ON_OPEN=EMPTY_DIR")
    options: Dict[str, str] = {}
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            options[key.strip()] = value.strip()
    return options
