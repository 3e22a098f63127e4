from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from media_composer.config import Settings
from media_composer.errors import EncodeError, EngineNotFound
from media_composer.models.domain import ResolvedStyle
from media_composer.services.effect_graph import SAMPLE_RATE, EffectGraph, Stage, fmt_number

_SAFE_VALUE_RE = re.compile(r"^[A-Za-z0-9_.+\-/]*$")
_READ_CHUNK = 4096


def _format_value(value: object) -> str:
    text = fmt_number(value)
    if _SAFE_VALUE_RE.match(text):
        return text
    return "'" + text.replace("'", "'\\''") + "'"


def serialize_stage(stage: Stage) -> str:
    inputs = "".join(f"[{label}]" for label in stage.inputs)
    outputs = "".join(f"[{label}]" for label in stage.outputs)
    body = stage.kind
    if stage.params:
        body += "=" + ":".join(f"{key}={_format_value(value)}" for key, value in stage.params)
    return f"{inputs}{body}{outputs}"


def serialize_graph(graph: EffectGraph) -> str:
    """Render the graph in ffmpeg ``-filter_complex`` syntax."""
    return ";".join(serialize_stage(stage) for stage in graph.stages)


class StderrTail:
    """Keeps only the newest ``max_bytes`` of a byte stream."""

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max(1, max_bytes)
        self._buffer = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes) -> None:
        self._buffer += chunk
        overflow = len(self._buffer) - self.max_bytes
        if overflow > 0:
            del self._buffer[:overflow]
            self.dropped += overflow

    def __len__(self) -> int:
        return len(self._buffer)

    def text(self) -> str:
        return self._buffer.decode("utf-8", errors="replace")


@dataclass
class InputSpec:
    path: str
    options: List[str] = field(default_factory=list)

    def to_args(self) -> List[str]:
        return [*self.options, "-i", self.path]


@dataclass
class EncodeInstruction:
    inputs: List[InputSpec]
    output_path: str
    codec_args: List[str]
    graph: Optional[EffectGraph] = None
    duration: Optional[float] = None
    shortest: bool = False
    label: str = "render"


@dataclass
class EncodeResult:
    output_path: str
    exit_code: int
    size: int
    elapsed_ms: int
    diagnostic_tail: str = ""


def image_input(path: str, fps: int) -> InputSpec:
    return InputSpec(path=path, options=["-loop", "1", "-framerate", str(fps)])


def video_codec_args(style: ResolvedStyle) -> List[str]:
    return [
        "-c:v",
        "libx264",
        "-preset",
        style.preset,
        "-crf",
        str(style.crf),
        "-pix_fmt",
        "yuv420p",
        "-r",
        str(style.fps),
        "-c:a",
        "aac",
        "-b:a",
        style.audio_bitrate,
        "-ar",
        str(SAMPLE_RATE),
        "-movflags",
        "+faststart",
    ]


def stream_copy_args() -> List[str]:
    return ["-c", "copy", "-movflags", "+faststart"]


class EncodeExecutor:
    def __init__(self, settings: Settings, logger: logging.Logger | None = None) -> None:
        self.settings = settings
        self.binary = settings.ffmpeg_binary
        self.log = logger or logging.getLogger(__name__)

    def check_engine(self) -> str:
        resolved = shutil.which(self.binary)
        if not resolved:
            raise EngineNotFound(f"ffmpeg binary not found: {self.binary}")
        return resolved

    def command(self, instruction: EncodeInstruction) -> List[str]:
        args = [self.binary, "-hide_banner", "-nostdin", "-y"]
        for spec in instruction.inputs:
            args.extend(spec.to_args())
        if instruction.graph is not None:
            args.extend(["-filter_complex", serialize_graph(instruction.graph)])
            args.extend(["-map", f"[{instruction.graph.video_out}]"])
            args.extend(["-map", f"[{instruction.graph.audio_out}]"])
        args.extend(instruction.codec_args)
        if instruction.duration:
            args.extend(["-t", fmt_number(round(instruction.duration, 3))])
        if instruction.shortest:
            args.append("-shortest")
        args.append(instruction.output_path)
        return args

    async def run(self, instruction: EncodeInstruction, job_id: UUID | None = None) -> EncodeResult:
        args = self.command(instruction)
        extra = {"job_id": str(job_id) if job_id else None, "pass": instruction.label}
        self.log.info("ffmpeg started", extra={**extra, "inputs": len(instruction.inputs)})
        self.log.debug("ffmpeg command", extra={**extra, "command": args})
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise EngineNotFound(f"ffmpeg binary not found: {self.binary}") from exc

        tail = StderrTail(self.settings.stderr_tail_bytes)
        try:
            exit_code = await asyncio.wait_for(self._drain(process, tail), timeout=self.settings.encode_timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise EncodeError(
                process.returncode,
                tail.text(),
                detail=f"ffmpeg timed out after {self.settings.encode_timeout}s",
            ) from exc
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if exit_code != 0:
            self.log.warning("ffmpeg failed", extra={**extra, "exit_code": exit_code, "elapsed_ms": elapsed_ms})
            raise EncodeError(exit_code, tail.text())
        try:
            size = os.path.getsize(instruction.output_path)
        except OSError:
            size = 0
        if size <= 0:
            self.log.warning("ffmpeg produced no output", extra={**extra, "elapsed_ms": elapsed_ms})
            raise EncodeError(exit_code, tail.text(), detail="ffmpeg produced no output")
        self.log.info("ffmpeg finished", extra={**extra, "elapsed_ms": elapsed_ms, "size": size})
        return EncodeResult(
            output_path=instruction.output_path,
            exit_code=exit_code,
            size=size,
            elapsed_ms=elapsed_ms,
            diagnostic_tail=tail.text(),
        )

    async def _drain(self, process: asyncio.subprocess.Process, tail: StderrTail) -> int:
        if process.stderr is not None:
            while True:
                chunk = await process.stderr.read(_READ_CHUNK)
                if not chunk:
                    break
                tail.feed(chunk)
        return await process.wait()
