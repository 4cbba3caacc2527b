from __future__ import annotations

import base64
import json
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from tubebridge.dependencies import (
    get_addon_service,
    get_stream_assembler,
    reset_cached_dependencies,
)
from tubebridge.main import create_app
from tubebridge.services.addon_service import AddonService
from tubebridge.services.extraction import CommandResult, ExtractionOrchestrator, TempFileNamer

TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode("ascii")


class FakeExtractionTool:
    """Stands in for the extraction tool executable.

    Replies with queued JSON payloads (or failures) and records every argv,
    together with the credential file contents visible at call time.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.cookie_contents: list[str | None] = []
        self._responses: list[CommandResult] = []

    def reply(self, payload: dict[str, Any]) -> None:
        self._responses.append(
            CommandResult(returncode=0, stdout=json.dumps(payload).encode("utf-8"), stderr=b"")
        )

    def fail(self, stderr: str = "ERROR: Unsupported URL", returncode: int = 1) -> None:
        self._responses.append(
            CommandResult(returncode=returncode, stdout=b"", stderr=stderr.encode("utf-8"))
        )

    async def __call__(self, argv: Sequence[str], timeout_seconds: float) -> CommandResult:
        _ = timeout_seconds
        self.calls.append(list(argv))
        cookie_text: str | None = None
        if "--cookies" in argv:
            cookie_path = Path(argv[list(argv).index("--cookies") + 1])
            cookie_text = cookie_path.read_text(encoding="utf-8")
        self.cookie_contents.append(cookie_text)
        if not self._responses:
            return CommandResult(returncode=1, stdout=b"", stderr=b"no reply queued")
        return self._responses.pop(0)


@pytest.fixture
def fake_tool() -> FakeExtractionTool:
    return FakeExtractionTool()


@pytest.fixture
def credential_dir(tmp_path: Path) -> Path:
    path = tmp_path / "credentials"
    path.mkdir()
    return path


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_tool: FakeExtractionTool,
    credential_dir: Path,
) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("TUBEBRIDGE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TUBEBRIDGE_TEMP_DIR", str(credential_dir))
    monkeypatch.setenv("TUBEBRIDGE_SESSION_SWEEP_ENABLED", "0")
    monkeypatch.setenv("TUBEBRIDGE_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("TUBEBRIDGE_TELEMETRY_SINK", "none")
    # Enrichment services must never be reached from tests.
    monkeypatch.setenv("TUBEBRIDGE_SPONSORBLOCK_BASE_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("TUBEBRIDGE_DEARROW_BASE_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("TUBEBRIDGE_HTTP_TIMEOUT_SECONDS", "0.5")
    reset_cached_dependencies()

    app = create_app()
    orchestrator = ExtractionOrchestrator(
        binary="yt-dlp",
        extractors="all",
        timeout_seconds=30,
        namer=TempFileNamer(credential_dir),
        runner=fake_tool,
    )
    app.dependency_overrides[get_addon_service] = lambda: AddonService(
        orchestrator=orchestrator,
        assembler=get_stream_assembler(),
    )
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
