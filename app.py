from __future__ import annotations

import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import BinaryIO, Dict, List, Mapping
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from raster_engine import DEFAULT_JPEG_QUALITY, RasterioEngine
from subsetter import (
    ConfigurationError,
    Dispatcher,
    SubsetResponse,
    config_base_from_env,
    error_response,
    gdal_options_from_env,
    load_configuration,
)

JPEG_QUALITY = int(os.getenv("SUBSETTER_JPEG_QUALITY", str(DEFAULT_JPEG_QUALITY)))


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("raster_subsetter")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    # stderr only: stdout carries the CGI response
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("SUBSETTER_LOG_FILE", "").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()

app = FastAPI(title="Raster Subsetter")


def _allowed_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

dispatcher: Dispatcher | None = None


def build_dispatcher(config_base: str | None = None) -> Dispatcher:
    base = config_base or config_base_from_env()
    config = load_configuration(base)
    engine = RasterioEngine(gdal_options=gdal_options_from_env(), jpeg_quality=JPEG_QUALITY)
    return Dispatcher.from_config(config, engine)


@app.on_event("startup")
def _startup() -> None:
    global dispatcher
    LOGGER.info("App startup")
    if dispatcher is None:
        # ConfigurationError propagates so the server never accepts requests
        dispatcher = build_dispatcher()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    if dispatcher is not None:
        dispatcher.close()


def dispatch_query(active: Dispatcher | None, params: Mapping[str, str], query_string: str) -> SubsetResponse:
    if active is None:
        return error_response("Configuration failure", 500)
    if "dbg" in params:
        return active.debug_page(params, query_string)
    return active.handle(params, query_string)


def _to_http_response(result: SubsetResponse) -> Response:
    if result.status_code != 200 or result.content_type != "image/jpeg":
        return Response(content=result.read_all(), status_code=result.status_code, media_type=result.content_type)
    return StreamingResponse(
        result.iter_chunks(),
        status_code=result.status_code,
        media_type=result.content_type,
        headers={"Cache-Control": "no-store"},
        background=BackgroundTask(result.close),
    )


@app.get("/")
def subset(request: Request) -> Response:
    query_string = request.url.query
    params: Dict[str, str] = dict(request.query_params)
    try:
        result = dispatch_query(dispatcher, params, query_string)
    except Exception:
        LOGGER.exception("Subset request unexpected failure query=%s", query_string)
        raise
    return _to_http_response(result)


@app.get("/health")
def health() -> Dict[str, str]:
    if dispatcher is None:
        return {"status": "unconfigured"}
    return {"status": "ok", "dataset": dispatcher.slot.path}


def write_cgi_response(result: SubsetResponse, out: BinaryIO) -> None:
    try:
        if not result.raw:
            out.write(result.cgi_header())
        for chunk in result.iter_chunks():
            out.write(chunk)
        out.flush()
    finally:
        result.close()


def run_cgi(environ: Mapping[str, str] | None = None, out: BinaryIO | None = None, config_base: str | None = None) -> int:
    environ = os.environ if environ is None else environ
    out = sys.stdout.buffer if out is None else out
    try:
        active = build_dispatcher(config_base)
    except ConfigurationError as exc:
        LOGGER.error("Startup failed: %s", exc.message)
        write_cgi_response(error_response("Configuration failure", 500), out)
        return 1

    try:
        query_string = environ.get("QUERY_STRING", "")
        params = dict(parse_qsl(query_string, keep_blank_values=True))
        write_cgi_response(dispatch_query(active, params, query_string), out)
    finally:
        active.close()
    return 0


def cgi_main() -> None:
    sys.exit(run_cgi())


def main() -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Raster subset HTTP server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--config", default=None, help="Configuration basename, overrides SUBSETTER_CONFIG_BASE")
    args = parser.parse_args()

    if args.config:
        os.environ["SUBSETTER_CONFIG_BASE"] = args.config
    LOGGER.info("Starting raster subsetter on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
