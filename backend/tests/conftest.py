"""Shared test fixtures and fakes for backend tests."""
import asyncio
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError

from convert_server.config import Settings
from convert_server.dependencies import build_services
from convert_server.main import create_app
from convert_server.services.converters import Converter
from convert_server.services.errors import ConversionError, InvalidOptionsError


# ─── Clock ────────────────────────────────────────────────────────


class ManualClock:
    """Replacement for asyncio.sleep: sleepers wake only when advance() passes their deadline."""

    def __init__(self):
        self.now = 0.0
        self._sleepers: list[tuple[float, asyncio.Future]] = []

    async def sleep(self, delay: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + delay, fut))
        await fut

    async def advance(self, seconds: float) -> None:
        # Let freshly scheduled tasks reach their sleep() first
        await asyncio.sleep(0)
        self.now += seconds
        due = [(d, f) for d, f in self._sleepers if d <= self.now]
        self._sleepers = [(d, f) for d, f in self._sleepers if d > self.now]
        for _, fut in due:
            if not fut.done():
                fut.set_result(None)
        await asyncio.sleep(0)


# ─── Fake converters ──────────────────────────────────────────────


def _parse_form(form):
    if form.get("mode") == "invalid":
        raise InvalidOptionsError("Unsupported mode: invalid")
    return dict(form)


async def upper_convert(input_path: str, options: dict, output_path: str) -> None:
    Path(output_path).write_bytes(Path(input_path).read_bytes().upper())


async def broken_convert(input_path: str, options: dict, output_path: str) -> None:
    Path(output_path).write_bytes(b"partial")
    raise ConversionError("converter exploded")


async def silent_convert(input_path: str, options: dict, output_path: str) -> None:
    """Claims success without writing anything."""
    Path(output_path).unlink(missing_ok=True)


class Gate:
    def __init__(self):
        self.event = asyncio.Event()

    async def convert(self, input_path: str, options: dict, output_path: str) -> None:
        await self.event.wait()
        await upper_convert(input_path, options, output_path)


def fake_converters(gate: Gate) -> dict[str, Converter]:
    text = "text/plain; charset=utf-8"
    return {
        "upper-txt": Converter("upper-txt", "text/plain", text, upper_convert, _parse_form, ("mode",)),
        "broken-txt": Converter("broken-txt", "text/plain", text, broken_convert, _parse_form),
        "silent-txt": Converter("silent-txt", "text/plain", text, silent_convert, _parse_form),
        "gated-txt": Converter("gated-txt", "text/plain", text, gate.convert, _parse_form),
    }


# ─── Azure Blob fake ──────────────────────────────────────────────


class FakeDownloader:
    def __init__(self, data: bytes):
        self.size = len(data)
        self._data = data

    def chunks(self):
        return self._iter()

    async def _iter(self):
        for i in range(0, len(self._data), 4):
            yield self._data[i:i + 4]


class FakeBlobClient:
    def __init__(self, container: "FakeContainer", name: str):
        self._container = container
        self._name = name

    def _require(self) -> bytes:
        if self._name not in self._container.blobs:
            raise ResourceNotFoundError("The specified blob does not exist.")
        return self._container.blobs[self._name]

    async def download_blob(self):
        return FakeDownloader(self._require())

    async def get_blob_properties(self):
        data = self._require()
        return SimpleNamespace(size=len(data), metadata=self._container.metadata.get(self._name, {}))


class FakeContainer:
    """In-memory stand-in for azure.storage.blob.aio.ContainerClient."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.metadata: dict[str, dict] = {}
        self.fail_uploads = False
        self.closed = False

    async def create_container(self):
        raise ResourceExistsError("The specified container already exists.")

    async def upload_blob(self, name, data, overwrite=False, metadata=None):
        if self.fail_uploads:
            raise HttpResponseError(message="Service unavailable")
        self.blobs[name] = bytes(data)
        self.metadata[name] = dict(metadata or {})

    def get_blob_client(self, name):
        return FakeBlobClient(self, name)

    async def delete_blob(self, name):
        if name not in self.blobs:
            raise ResourceNotFoundError("The specified blob does not exist.")
        del self.blobs[name]
        self.metadata.pop(name, None)

    async def close(self):
        self.closed = True


# ─── Fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path) -> Settings:
    temp_dir = tmp_path / "staging"
    temp_dir.mkdir()
    return Settings(
        _env_file=None,
        STORAGE_TYPE="local",
        STORAGE_PATH=str(tmp_path / "uploads"),
        TEMP_DIR=str(temp_dir),
        SUCCESS_TTL_SECONDS=300,
        FAILURE_TTL_SECONDS=10,
        MAX_UPLOAD_BYTES=1024,
        DOWNLOAD_CHUNK_SIZE=4,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def gate() -> Gate:
    return Gate()


@pytest.fixture
def container() -> FakeContainer:
    return FakeContainer()


@pytest_asyncio.fixture
async def services(settings, clock, gate):
    """Local-storage service graph with fake converters and a manual clock."""
    svc = build_services(settings, converters=fake_converters(gate), sleep=clock.sleep)
    await svc.start()
    yield svc
    await svc.stop()


@pytest_asyncio.fixture
async def client(settings, services):
    app = create_app(settings)
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
