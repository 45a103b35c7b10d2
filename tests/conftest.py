"""Shared test fixtures for fusion-mlmodel."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Callable

import httpx
import pytest

from fusion_mlmodel.core import DirectoryStager, ManifestBuilder
from fusion_mlmodel.models import FusionCredentials, FusionEndpoint
from fusion_mlmodel.transport import FusionSession


# ---------------------------------------------------------------------------
# Fake models exposing the two persistence capabilities
# ---------------------------------------------------------------------------


class SaveableModel:
    """Legacy-style model: ``save(context, path)``."""

    def __init__(self) -> None:
        self.saved_with: list[tuple[object, str]] = []

    def save(self, context: object, path: str) -> None:
        self.saved_with.append((context, path))
        target = Path(path)
        (target / "data").mkdir(parents=True, exist_ok=True)
        (target / "data" / "part-00000").write_bytes(b"\x01\x02\x03" * 100)
        (target / "metadata").mkdir(exist_ok=True)
        (target / "metadata" / "part-00000").write_text('{"class": "NaiveBayesModel"}')


class _Writer:
    def __init__(self, model: "WritableModel") -> None:
        self.model = model
        self.overwritten = False

    def overwrite(self) -> "_Writer":
        self.overwritten = True
        return self

    def save(self, path: str) -> None:
        self.model.saved_paths.append((path, self.overwritten))
        target = Path(path)
        (target / "stages").mkdir(parents=True, exist_ok=True)
        (target / "stages" / "0_lr").write_bytes(b"coefficients")
        (target / "metadata.json").write_text('{"uid": "pipeline_1"}')


class WritableModel:
    """Modern-style model: ``write().overwrite().save(path)`` plus a save shortcut."""

    def __init__(self) -> None:
        self.saved_paths: list[tuple[str, bool]] = []

    def write(self) -> _Writer:
        return _Writer(self)

    def save(self, path: str) -> None:
        raise AssertionError("save(path) shortcut must not be used")


@pytest.fixture()
def saveable_model() -> SaveableModel:
    return SaveableModel()


@pytest.fixture()
def writable_model() -> WritableModel:
    return WritableModel()


# ---------------------------------------------------------------------------
# Filesystem fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def staging_root(tmp_path: Path) -> Path:
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture()
def fixed_clock() -> Callable[[], datetime]:
    return lambda: datetime(2024, 3, 5, 14, 7, 9)


@pytest.fixture()
def stager(staging_root: Path, fixed_clock: Callable[[], datetime]) -> DirectoryStager:
    return DirectoryStager(staging_root, clock=fixed_clock)


@pytest.fixture()
def builder() -> ManifestBuilder:
    return ManifestBuilder()


@pytest.fixture()
def model_dir(tmp_path: Path) -> Path:
    """A temp directory with a few fake saved-model files."""
    d = tmp_path / "model"
    d.mkdir()
    (d / "weights.bin").write_bytes(b"\x00\x01\x02\x03" * 256)
    (d / "metadata.json").write_text('{"numClasses": 2}', encoding="utf-8")
    sub = d / "data" / "nested"
    sub.mkdir(parents=True)
    (sub / "part-00000.parquet").write_bytes(b"PAR1" + b"\xff" * 64)
    return d


@pytest.fixture()
def mllib_metadata() -> dict[str, str]:
    return {
        "analyzerJson": '{"tokenizer": "standard"}',
        "numFeatures": "1000",
        "featureFields": "title,body",
        "owner": "search-team",
    }


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


class RecordingHandler:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.bodies: list[bytes] = []
        self.put_statuses: list[int] = []
        self.login_status = 201

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(request.read())
        if request.url.path == "/api/session":
            return httpx.Response(
                self.login_status,
                headers={"Set-Cookie": "id=session-token; Path=/"},
            )
        status = self.put_statuses.pop(0) if self.put_statuses else 200
        return httpx.Response(status, json={"ok": status < 400})

    def blob_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith("/api/apollo/blobs/")]

    def login_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/session"]

    def login_payloads(self) -> list[dict[str, str]]:
        return [
            json.loads(body)
            for request, body in zip(self.requests, self.bodies)
            if request.url.path == "/api/session"
        ]


@pytest.fixture()
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture()
def endpoint() -> FusionEndpoint:
    return FusionEndpoint(host="fusion", port=9000)


@pytest.fixture()
def credentials() -> FusionCredentials:
    return FusionCredentials(username="admin", password="s3cret", realm="native")


@pytest.fixture()
def session(
    handler: RecordingHandler,
    endpoint: FusionEndpoint,
    credentials: FusionCredentials,
) -> FusionSession:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return FusionSession(endpoint, credentials, client=client)


@pytest.fixture()
def anonymous_session(handler: RecordingHandler, endpoint: FusionEndpoint) -> FusionSession:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return FusionSession(endpoint, None, client=client)
