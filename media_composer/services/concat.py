from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from media_composer.errors import ConcatError, EncodeError
from media_composer.models.domain import AssetRole, LocalAsset, ResolvedStyle
from media_composer.services.effect_graph import GraphInputs, build_graph
from media_composer.services.encoder import (
    EncodeExecutor,
    EncodeInstruction,
    EncodeResult,
    InputSpec,
    image_input,
    stream_copy_args,
    video_codec_args,
)
from media_composer.storage.workspace import JobWorkspace

SEGMENT = "segment"
PADDING = "padding"


@dataclass(frozen=True)
class SegmentPlan:
    kind: str
    image: LocalAsset
    audio: Optional[LocalAsset] = None
    duration: Optional[float] = None
    source_index: int = 0


def plan_segments(
    segments: Sequence[Tuple[LocalAsset, LocalAsset, Optional[float]]],
    padding_seconds: float = 0.0,
) -> List[SegmentPlan]:
    """Input order is kept; padding sits only between two segments, reusing the preceding image."""
    plan: List[SegmentPlan] = []
    for index, (image, audio, duration) in enumerate(segments):
        if index > 0 and padding_seconds > 0:
            plan.append(
                SegmentPlan(kind=PADDING, image=plan[-1].image, duration=padding_seconds, source_index=index - 1)
            )
        plan.append(SegmentPlan(kind=SEGMENT, image=image, audio=audio, duration=duration, source_index=index))
    return plan


def concat_list_line(path: str) -> str:
    return "file '" + path.replace("'", "'\\''") + "'"


class SegmentConcatenator:
    def __init__(self, executor: EncodeExecutor, logger: logging.Logger | None = None) -> None:
        self.executor = executor
        self.log = logger or logging.getLogger(__name__)

    def segment_instruction(self, entry: SegmentPlan, style: ResolvedStyle, output_path: str) -> EncodeInstruction:
        inputs = [image_input(entry.image.path, style.fps)]
        if entry.kind == SEGMENT and entry.audio is not None:
            inputs.append(InputSpec(entry.audio.path))
            graph = build_graph(style, GraphInputs(image_index=0, audio_indexes=(1,)))
            shortest = True
        else:
            graph = build_graph(style, GraphInputs(image_index=0, audio_indexes=()))
            shortest = False
        return EncodeInstruction(
            inputs=inputs,
            output_path=output_path,
            codec_args=video_codec_args(style),
            graph=graph,
            duration=entry.duration,
            shortest=shortest,
            label=entry.kind,
        )

    async def render(
        self,
        plan: List[SegmentPlan],
        style: ResolvedStyle,
        workspace: JobWorkspace,
        output_path: str,
        job_id: UUID | None = None,
    ) -> EncodeResult:
        if not plan:
            raise ConcatError(None, "", detail="nothing to concatenate")
        if len(plan) == 1:
            return await self._encode_entry(plan[0], 0, style, output_path, job_id)

        encoded: List[str] = []
        for position, entry in enumerate(plan):
            intermediate = workspace.allocate(AssetRole.INTERMEDIATE, ".mp4", index=position)
            await self._encode_entry(entry, position, style, intermediate.path, job_id)
            encoded.append(intermediate.path)

        lines = [concat_list_line(path) for path in encoded]
        if not (len(encoded) == len(plan) == len(lines)):
            raise ConcatError(
                None,
                "",
                detail=f"concat mismatch: {len(plan)} planned, {len(encoded)} encoded, {len(lines)} listed",
            )
        listing = workspace.write_text(AssetRole.CONCAT_LIST, ".txt", "\n".join(lines) + "\n")
        self.log.info(
            "concatenating segments",
            extra={"job_id": str(job_id) if job_id else None, "segments": len(encoded)},
        )
        instruction = EncodeInstruction(
            inputs=[InputSpec(listing.path, options=["-f", "concat", "-safe", "0"])],
            output_path=output_path,
            codec_args=stream_copy_args(),
            label="concat",
        )
        try:
            return await self.executor.run(instruction, job_id)
        except EncodeError as exc:
            raise ConcatError(exc.exit_code, exc.diagnostic_tail, detail=f"concat pass failed: {exc.detail}") from exc

    async def _encode_entry(
        self,
        entry: SegmentPlan,
        position: int,
        style: ResolvedStyle,
        output_path: str,
        job_id: UUID | None,
    ) -> EncodeResult:
        instruction = self.segment_instruction(entry, style, output_path)
        try:
            return await self.executor.run(instruction, job_id)
        except EncodeError as exc:
            raise ConcatError(
                exc.exit_code,
                exc.diagnostic_tail,
                detail=f"{entry.kind} {position} encode failed: {exc.detail}",
            ) from exc
