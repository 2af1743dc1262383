#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from urllib.parse import parse_qsl

from raster_engine import RasterioEngine
from subsetter import (
    DatasetSlot,
    SubsetError,
    build_resolver,
    config_base_from_env,
    gdal_options_from_env,
    load_configuration,
)


def _check(resolver, slot: DatasetSlot, query_string: str) -> dict:
    params = dict(parse_qsl(query_string, keep_blank_values=True))
    try:
        target = resolver.resolve(params, query_string, slot)
    except SubsetError as exc:
        return {"query": query_string, "status": exc.status_code, "error": exc.message}
    return {
        "query": query_string,
        "status": 200,
        "path": target.path,
        "width": int(target.handle.width),
        "height": int(target.handle.height),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Resolve query strings against the active configuration")
    parser.add_argument("queries", nargs="+", help="Raw query strings, e.g. 'ID=tile1&size=512,512'")
    parser.add_argument("--config", default=None, help="Configuration basename")
    args = parser.parse_args()

    config = load_configuration(args.config or config_base_from_env())
    resolver = build_resolver(config)
    slot = DatasetSlot(RasterioEngine(gdal_options=gdal_options_from_env()))
    rows = []
    try:
        resolver.prepare(slot)
        for query in args.queries:
            rows.append(_check(resolver, slot, query))
    finally:
        slot.clear()

    failed = [r for r in rows if r["status"] != 200]
    print(f"mode={type(config).__name__} total={len(rows)} failed={len(failed)}")
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
