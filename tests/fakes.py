from io import BytesIO

from subsetter import DatasetOpenError

JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9"


class FakeHandle:
    def __init__(self, path, width=1000, height=800, events=None):
        self.path = path
        self.width = width
        self.height = height
        self.close_calls = 0
        self.events = events if events is not None else []

    def close(self):
        self.close_calls += 1
        self.events.append(f"close {self.path}")


class FakeArtifact:
    def __init__(self, data=JPEG_BYTES):
        self._buffer = BytesIO(data)
        self.close_calls = 0

    @property
    def closed(self):
        return self.close_calls > 0

    def read(self, size=-1):
        return self._buffer.read(size)

    def close(self):
        self.close_calls += 1


class FakeEngine:
    def __init__(self, width=1000, height=800, missing=(), fail_extract=None):
        self.width = width
        self.height = height
        self.missing = set(missing)
        self.fail_extract = fail_extract
        self.handles = []
        self.requests = []
        self.artifacts = []
        self.events = []

    def open(self, path):
        if not path or path in self.missing:
            raise DatasetOpenError(f"{path}: No such file or directory")
        handle = FakeHandle(path, self.width, self.height, self.events)
        self.events.append(f"open {path}")
        self.handles.append(handle)
        return handle

    def extract(self, handle, request):
        if self.fail_extract is not None:
            raise self.fail_extract
        self.requests.append((handle.path, request))
        artifact = FakeArtifact()
        self.artifacts.append(artifact)
        return artifact
