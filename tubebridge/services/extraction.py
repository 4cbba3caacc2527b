from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from tubebridge.models.extraction import ExtractedRecord, parse_extraction_payload
from tubebridge.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubebridge.extraction")

PAGE_SIZE = 100
# Largest integer a JSON number round-trips exactly; the counter wraps here.
COUNTER_MODULUS = 2**53 - 1
_STDERR_EXCERPT_LENGTH = 2000


class ExtractionError(Exception):
    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CredentialFileError(ExtractionError):
    pass


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: bytes
    stderr: bytes


CommandRunner = Callable[[Sequence[str], float], Awaitable[CommandResult]]


class TempFileNamer:
    """Hands out credential file paths unique for the lifetime of the process.

    Names combine a millisecond timestamp with a process-wide counter, so two
    requests in the same millisecond still differ by counter value.
    """

    def __init__(self, directory: Path, *, prefix: str = "cookies", suffix: str = ".txt") -> None:
        self._directory = directory
        self._prefix = prefix
        self._suffix = suffix
        self._counter = 0
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def next_path(self) -> Path:
        with self._lock:
            sequence = self._counter
            self._counter = (self._counter + 1) % COUNTER_MODULUS
        timestamp_ms = time.time_ns() // 1_000_000
        name = f"{self._prefix}-{os.getpid()}-{timestamp_ms}-{sequence}{self._suffix}"
        return self._directory / name


@asynccontextmanager
async def credential_file(namer: TempFileNamer, secret: str | None) -> AsyncIterator[Path | None]:
    """Writes `secret` to a fresh file for the duration of the block.

    The file is removed on every exit path, including cancellation. A failed
    removal is logged at ERROR because it leaves plaintext credentials behind.
    """
    if not secret:
        yield None
        return

    path = namer.next_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(mode=0o600, exist_ok=False)
    except OSError as exc:
        raise CredentialFileError(f"failed to create credential file: {exc}") from exc
    try:
        path.write_text(secret, encoding="utf-8")
    except OSError as exc:
        _remove_credential_file(path)
        raise CredentialFileError(f"failed to write credential file: {exc}") from exc

    try:
        yield path
    finally:
        _remove_credential_file(path)


def _remove_credential_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        LOGGER.error(
            "credential file cleanup failed; plaintext secret left on disk path=%s",
            path,
            exc_info=True,
        )


def playlist_range(skip: int, *, reverse: bool) -> str:
    """Builds the `-I` index range for one page of results.

    Ascending pages are `[skip+1, skip+PAGE_SIZE]`; reversed pages count from
    the end of the list and step backwards.
    """
    skip = max(0, skip)
    if reverse:
        return f"{-(skip + 1)}:{-(skip + PAGE_SIZE)}:-1"
    return f"{skip + 1}:{skip + PAGE_SIZE}:1"


async def run_subprocess(argv: Sequence[str], timeout_seconds: float) -> CommandResult:
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except BaseException:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return CommandResult(returncode=process.returncode or 0, stdout=stdout, stderr=stderr)


class ExtractionOrchestrator:
    def __init__(
        self,
        *,
        binary: str,
        extractors: str,
        timeout_seconds: float,
        namer: TempFileNamer,
        runner: CommandRunner = run_subprocess,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._binary = binary
        self._extractors = extractors
        self._timeout_seconds = timeout_seconds
        self._namer = namer
        self._runner = runner
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def baseline_flags(self) -> list[str]:
        return [
            "-i",
            "--no-plugin-dirs",
            "--flat-playlist",
            "--no-cache-dir",
            "--no-warnings",
            "--ignore-no-formats-error",
            "-J",
            "--ies",
            self._extractors,
            "--extractor-args",
            "generic:impersonate",
            "--compat-options",
            "no-youtube-channel-redirect",
        ]

    async def invoke(self, secret: str | None, args: Sequence[str]) -> ExtractedRecord:
        with self._telemetry.span("extraction.invoke", has_credentials=bool(secret)) as outcome:
            async with credential_file(self._namer, secret) as cookie_path:
                argv = [self._binary, *args, *self.baseline_flags()]
                if cookie_path is not None:
                    argv.extend(["--cookies", str(cookie_path)])
                result = await self._run(argv)
            record = _parse_stdout(result)
            outcome.update(kind=record.kind, entries=len(record.entries))
        return record

    async def _run(self, argv: list[str]) -> CommandResult:
        try:
            return await self._runner(argv, self._timeout_seconds)
        except TimeoutError as exc:
            raise ExtractionError(
                f"extraction tool timed out after {self._timeout_seconds:g}s"
            ) from exc
        except OSError as exc:
            raise ExtractionError(f"failed to start extraction tool: {exc}") from exc


def _parse_stdout(result: CommandResult) -> ExtractedRecord:
    stderr = result.stderr.decode("utf-8", errors="replace")[-_STDERR_EXCERPT_LENGTH:]
    if result.returncode != 0:
        raise ExtractionError(
            f"extraction tool exited with status {result.returncode}",
            returncode=result.returncode,
            stderr=stderr,
        )
    try:
        payload = json.loads(result.stdout)
        return parse_extraction_payload(payload)
    except ValueError as exc:
        raise ExtractionError(
            f"extraction tool produced malformed output: {exc}",
            returncode=result.returncode,
            stderr=stderr,
        ) from exc
