import asyncio
import tempfile
import unittest
from io import BytesIO
from pathlib import Path
from unittest.mock import patch

from fakes import JPEG_BYTES, FakeEngine
from subsetter import ConfigurationError, Dispatcher, TemplatedConfig

try:
    import app as app_module
    from starlette.requests import Request
except ModuleNotFoundError:
    app_module = None
    Request = None


def _request(query_string):
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "query_string": query_string.encode("ascii"),
            "headers": [],
        }
    )


async def _consume(response):
    chunks = [chunk async for chunk in response.body_iterator]
    if response.background is not None:
        await response.background()
    return b"".join(chunks)


def _templated_dispatcher(engine=None):
    engine = engine or FakeEngine()
    return Dispatcher.from_config(TemplatedConfig(prefix="/data/", suffix=".tif"), engine), engine


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def test_subset_endpoint_streams_jpeg(self):
        dispatcher, engine = _templated_dispatcher()
        with patch.object(app_module, "dispatcher", dispatcher):
            response = app_module.subset(_request("size=512,512&ID=tile1"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.media_type, "image/jpeg")
        self.assertEqual(asyncio.run(_consume(response)), JPEG_BYTES)
        self.assertTrue(engine.artifacts[0].closed)
        self.assertEqual(engine.requests[0][0], "/data/tile1.tif")

    def test_subset_endpoint_returns_html_error(self):
        dispatcher, engine = _templated_dispatcher()
        with patch.object(app_module, "dispatcher", dispatcher):
            response = app_module.subset(_request("ID=tile1"))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.media_type, "text/html")
        self.assertIn(b"<h1>Bad Request</h1>", response.body)
        self.assertIn(b"Missing size parameter", response.body)
        self.assertEqual(engine.handles, [])

    def test_subset_endpoint_missing_dataset_is_404(self):
        dispatcher, _ = _templated_dispatcher(FakeEngine(missing={"/data/nope.tif"}))
        with patch.object(app_module, "dispatcher", dispatcher):
            response = app_module.subset(_request("size=10,10&ID=nope"))
        self.assertEqual(response.status_code, 404)
        self.assertIn(b"No such dataset", response.body)

    def test_subset_endpoint_without_configuration(self):
        with patch.object(app_module, "dispatcher", None):
            response = app_module.subset(_request("size=10,10"))
        self.assertEqual(response.status_code, 500)
        self.assertIn(b"Configuration failure", response.body)

    def test_dbg_returns_debug_page(self):
        dispatcher, engine = _templated_dispatcher()
        with patch.object(app_module, "dispatcher", dispatcher):
            response = app_module.subset(_request("dbg&bbox=0,0,10,10"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.media_type, "text/html")
        self.assertIn(b"debug output", response.body)
        self.assertEqual(engine.requests, [])

    def test_health(self):
        dispatcher, _ = _templated_dispatcher()
        with patch.object(app_module, "dispatcher", dispatcher):
            self.assertEqual(app_module.health(), {"status": "ok", "dataset": ""})
        with patch.object(app_module, "dispatcher", None):
            self.assertEqual(app_module.health(), {"status": "unconfigured"})

    def test_startup_fails_without_configuration(self):
        with tempfile.TemporaryDirectory() as tmp:
            env = {"SUBSETTER_CONFIG_BASE": str(Path(tmp) / "absent")}
            with patch.dict("os.environ", env), patch.object(app_module, "dispatcher", None):
                with self.assertRaises(ConfigurationError):
                    app_module._startup()


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class CgiTests(unittest.TestCase):
    def _run(self, query_string, dispatcher):
        out = BytesIO()
        with patch.object(app_module, "build_dispatcher", return_value=dispatcher):
            code = app_module.run_cgi({"QUERY_STRING": query_string}, out)
        return code, out.getvalue()

    def test_success_writes_header_block(self):
        dispatcher, engine = _templated_dispatcher()
        code, output = self._run("ID=tile1&size=64,64", dispatcher)
        self.assertEqual(code, 0)
        self.assertEqual(output, b"Status: 200 OK\r\nContent-type: image/jpeg\r\n\r\n" + JPEG_BYTES)
        self.assertTrue(engine.artifacts[0].closed)
        self.assertEqual(engine.handles[0].close_calls, 1)

    def test_raw_suppresses_headers(self):
        dispatcher, _ = _templated_dispatcher()
        code, output = self._run("ID=tile1&size=64,64&RAW=1", dispatcher)
        self.assertEqual(code, 0)
        self.assertEqual(output, JPEG_BYTES)

    def test_errors_keep_headers_even_with_raw(self):
        dispatcher, _ = _templated_dispatcher()
        _, output = self._run("size=64,64&RAW=1", dispatcher)
        self.assertTrue(output.startswith(b"Status: 400 Bad Request\r\nContent-type: text/html\r\n\r\n"))
        self.assertIn(b"Missing ID element", output)

    def test_configuration_failure_exits_nonzero(self):
        out = BytesIO()
        with tempfile.TemporaryDirectory() as tmp:
            code = app_module.run_cgi({"QUERY_STRING": "size=1,1"}, out, config_base=str(Path(tmp) / "absent"))
        self.assertEqual(code, 1)
        self.assertTrue(out.getvalue().startswith(b"Status: 500 Internal Server error"))


if __name__ == "__main__":
    unittest.main()
