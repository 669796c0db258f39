"""Re-encode recognition uploads to PCM16 WAV with an external ffmpeg."""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
import time
from collections.abc import AsyncIterator
from pathlib import Path

from speechgate.common.config import NormalizeConfig
from speechgate.common.errors import BackendUnavailable, ConversionFailed, InvalidInput
from speechgate.common.logging import get_logger

PROCESS_REAP_TIMEOUT_SECONDS = 2.0
READER_JOIN_TIMEOUT_SECONDS = 1.0
STDERR_CHUNK_BYTES = 1024


class BoundedStderr:
    """Collect at most ``limit`` bytes of a stream and discard the rest."""

    def __init__(self, limit: int) -> None:
        self._limit = max(1, limit)
        self._buffer = bytearray()

    async def drain(self, stream: asyncio.StreamReader) -> None:
        # Keep reading past the limit so the child never blocks on a full pipe
        while True:
            chunk = await stream.read(STDERR_CHUNK_BYTES)
            if not chunk:
                return
            room = self._limit - len(self._buffer)
            if room > 0:
                self._buffer.extend(chunk[:room])

    def __len__(self) -> int:
        return len(self._buffer)

    def text(self) -> str:
        return self._buffer.decode("utf-8", errors="replace")


def build_ffmpeg_args(
    ffmpeg_path: str,
    input_path: str,
    output_path: str,
    *,
    sample_rate_hertz: int,
    channels: int,
    max_duration_seconds: int = 0,
) -> list[str]:
    """Deterministic ffmpeg command line producing a PCM16 WAV file."""
    args = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y", "-i", input_path]
    if max_duration_seconds > 0:
        args += ["-t", str(max_duration_seconds)]
    args += [
        "-ac", str(channels),
        "-ar", str(sample_rate_hertz),
        "-acodec", "pcm_s16le",
        "-f", "wav",
        output_path,
    ]
    return args


class AudioNormalizer:
    """Run ffmpeg conversions under a process limit.

    Both temp files are deleted and the permit released on every exit path,
    including timeout and cancellation.
    """

    def __init__(self, config: NormalizeConfig) -> None:
        self._config = config
        max_processes = config.concurrency_max_processes
        self._semaphore: asyncio.Semaphore | None = (
            asyncio.Semaphore(max_processes) if max_processes and max_processes >= 1 else None
        )
        self._logger = get_logger(__name__)

    @property
    def target_sample_rate_hertz(self) -> int:
        return self._config.target_sample_rate_hertz

    async def normalize(self, data: bytes) -> bytes:
        """Convert arbitrary audio to PCM16 WAV bytes.

        Raises:
            InvalidInput: Input larger than ``max_input_bytes`` (checked
                before any process is started).
            ConversionFailed: Non-zero exit, timeout, unreadable output or
                cancellation.
            BackendUnavailable: The ffmpeg executable cannot be found.
        """
        if len(data) > self._config.max_input_bytes:
            raise InvalidInput(
                "Audio file too large for normalization",
                status_code=413,
                code="file_too_large",
                param="file",
            )

        try:
            async with self._permit():
                return await self._convert(data)
        except asyncio.CancelledError as exc:
            self._logger.warning("asr.normalize_interrupted", input_bytes=len(data))
            raise ConversionFailed("Audio conversion interrupted", param="file") from exc

    @contextlib.asynccontextmanager
    async def _permit(self) -> AsyncIterator[None]:
        if self._semaphore is None:
            yield
            return
        async with self._semaphore:
            yield

    async def _convert(self, data: bytes) -> bytes:
        input_path: Path | None = None
        output_path: Path | None = None
        process: asyncio.subprocess.Process | None = None
        reader: asyncio.Task[None] | None = None
        start = time.perf_counter()
        try:
            try:
                temp_dir = self._resolve_temp_dir()
                input_path = _create_temp_file(temp_dir, "asr-input-", ".bin")
                output_path = _create_temp_file(temp_dir, "asr-output-", ".wav")
                await asyncio.to_thread(input_path.write_bytes, data)
            except OSError as exc:
                raise ConversionFailed.with_detail("Audio conversion failed", str(exc)) from exc

            args = build_ffmpeg_args(
                self._config.ffmpeg_path,
                str(input_path),
                str(output_path),
                sample_rate_hertz=self._config.target_sample_rate_hertz,
                channels=self._config.target_channels,
                max_duration_seconds=self._config.max_duration_seconds,
            )
            process = await self._start(args)
            stderr = BoundedStderr(self._config.max_stderr_bytes)
            if process.stderr is None:
                raise ConversionFailed("Audio conversion failed", param="file")
            reader = asyncio.create_task(stderr.drain(process.stderr))

            try:
                await asyncio.wait_for(process.wait(), self._config.timeout_ms / 1000.0)
            except asyncio.TimeoutError:
                # Child may exit on its own right at the deadline
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(process.wait(), PROCESS_REAP_TIMEOUT_SECONDS)
                await _join(reader)
                self._logger.warning(
                    "asr.normalize_timeout",
                    timeout_ms=self._config.timeout_ms,
                    stderr_bytes=len(stderr),
                )
                raise ConversionFailed.with_detail("Audio conversion timed out", stderr.text()) from None

            await _join(reader)
            if process.returncode != 0:
                self._logger.warning(
                    "asr.normalize_failed",
                    exit_code=process.returncode,
                    stderr_bytes=len(stderr),
                )
                raise ConversionFailed.with_detail("Audio conversion failed", stderr.text())

            try:
                output = await asyncio.to_thread(output_path.read_bytes)
            except OSError as exc:
                raise ConversionFailed.with_detail("Audio conversion failed", str(exc)) from exc

            self._logger.info(
                "asr.normalize_completed",
                input_bytes=len(data),
                output_bytes=len(output),
                sample_rate_hertz=self._config.target_sample_rate_hertz,
                channels=self._config.target_channels,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
            return output
        finally:
            if process is not None and process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            if reader is not None and not reader.done():
                reader.cancel()
            _delete_quietly(input_path)
            _delete_quietly(output_path)

    async def _start(self, args: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            self._logger.error("asr.normalize_backend_missing", ffmpeg_path=args[0])
            raise BackendUnavailable(
                "ASR normalization backend is unavailable", param="file"
            ) from exc
        except OSError as exc:
            raise ConversionFailed.with_detail("Audio conversion failed", str(exc)) from exc

    def _resolve_temp_dir(self) -> Path:
        configured = self._config.temp_dir
        if not configured or not configured.strip():
            return Path(tempfile.gettempdir())
        path = Path(configured)
        path.mkdir(parents=True, exist_ok=True)
        return path


def _create_temp_file(directory: Path, prefix: str, suffix: str) -> Path:
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    os.close(fd)
    return Path(name)


async def _join(reader: asyncio.Task[None]) -> None:
    await asyncio.wait({reader}, timeout=READER_JOIN_TIMEOUT_SECONDS)


def _delete_quietly(path: Path | None) -> None:
    if path is None:
        return
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)


__all__ = ["BoundedStderr", "build_ffmpeg_args", "AudioNormalizer"]
