from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional
from uuid import uuid4

from media_composer.clients.fetcher import AssetFetcher, FetchRequest, validate_url
from media_composer.config import Settings
from media_composer.errors import ConfigError, EncodeError, EngineNotFound, MediaComposerError
from media_composer.models.api import StoryRequest, VideoRequest
from media_composer.models.domain import (
    Artifact,
    AssetRole,
    Job,
    JobOutcome,
    JobStage,
    JobStatusHistory,
    LocalAsset,
    ResolvedStyle,
)
from media_composer.services.concat import SegmentConcatenator, plan_segments
from media_composer.services.effect_graph import GraphInputs, build_graph
from media_composer.services.encoder import (
    EncodeExecutor,
    EncodeInstruction,
    InputSpec,
    image_input,
    video_codec_args,
)
from media_composer.services.probe import probe_duration
from media_composer.services.style import clamp, resolve_style
from media_composer.services.subtitles import write_inline_subtitles
from media_composer.storage.artifacts import ArtifactManager
from media_composer.storage.workspace import JobWorkspace

MAX_PADDING_SECONDS = 30.0

Work = Callable[[Job, JobWorkspace], Awaitable[List[Artifact]]]


class VideoService:
    def __init__(
        self,
        settings: Settings,
        fetcher: AssetFetcher | None = None,
        executor: EncodeExecutor | None = None,
        artifacts: ArtifactManager | None = None,
        duration_probe: Callable[[str], Optional[float]] | None = None,
    ) -> None:
        self.settings = settings
        self.log = logging.getLogger(__name__)
        self.fetcher = fetcher or AssetFetcher(settings, logger=self.log)
        self.executor = executor or EncodeExecutor(settings, logger=self.log)
        self.artifacts = artifacts or ArtifactManager(settings, logger=self.log)
        self.concatenator = SegmentConcatenator(self.executor, logger=self.log)
        self.duration_probe = duration_probe or probe_duration

    def check_engine(self) -> str:
        return self.executor.check_engine()

    async def make_video(self, payload: VideoRequest) -> JobOutcome:
        async def work(job: Job, workspace: JobWorkspace) -> List[Artifact]:
            return await self._render_concatenated(job, workspace, payload)

        return await self._execute("segments", work)

    async def make_per_segment(self, payload: VideoRequest) -> JobOutcome:
        async def work(job: Job, workspace: JobWorkspace) -> List[Artifact]:
            return await self._render_per_segment(job, workspace, payload)

        return await self._execute("per_segment", work)

    async def make_story(self, payload: StoryRequest) -> JobOutcome:
        async def work(job: Job, workspace: JobWorkspace) -> List[Artifact]:
            return await self._render_story(job, workspace, payload)

        return await self._execute("story", work)

    async def _execute(self, mode: str, work: Work) -> JobOutcome:
        job = Job(id=uuid4(), mode=mode)
        started = time.monotonic()
        self._update_status(job, JobStage.PENDING, "Job accepted")
        try:
            with JobWorkspace(self.settings.tmp_dir, job.id, logger=self.log) as workspace:
                job.artifacts = await work(job, workspace)
        except EngineNotFound as exc:
            self._update_status(job, JobStage.FAILED, "Encoding engine missing", error=exc)
            raise
        except MediaComposerError as exc:
            self._update_status(job, JobStage.FAILED, "Video generation failed", error=exc)
            return self._outcome(job, started, error=exc)
        except Exception as exc:
            self.log.exception("video job failed", extra={"job_id": str(job.id)})
            self._update_status(job, JobStage.FAILED, "Video generation failed", error=exc)
            return self._outcome(job, started, error=exc)
        self._update_status(job, JobStage.SUCCEEDED, "Video is ready for download")
        return self._outcome(job, started)

    def _outcome(self, job: Job, started: float, error: Exception | None = None) -> JobOutcome:
        took_ms = int((time.monotonic() - started) * 1000)
        if error is None:
            return JobOutcome(
                ok=True,
                job_id=job.id,
                artifacts=job.artifacts,
                duration_seconds=job.duration_seconds,
                took_ms=took_ms,
            )
        if isinstance(error, EncodeError):
            detail = error.excerpt
        elif isinstance(error, MediaComposerError):
            detail = error.detail
        else:
            detail = "internal error"
        return JobOutcome(
            ok=False,
            job_id=job.id,
            took_ms=took_ms,
            error_kind=job.error_kind,
            detail=detail,
        )

    def _update_status(
        self,
        job: Job,
        stage: JobStage,
        message: str,
        error: Exception | None = None,
    ) -> None:
        job.stage = stage
        job.status_history.append(JobStatusHistory(stage=stage, message=message))
        job.updated_at = datetime.utcnow()
        if error is not None:
            job.error_kind = getattr(error, "error_kind", "internal_error")
            job.error = str(error)
        level = logging.WARNING if stage == JobStage.FAILED else logging.INFO
        self.log.log(
            level,
            message,
            extra={"job_id": str(job.id), "mode": job.mode, "stage": stage.value, "error_kind": job.error_kind},
        )

    async def _render_concatenated(self, job: Job, workspace: JobWorkspace, payload: VideoRequest) -> List[Artifact]:
        image_url, audio_urls = self._validate_sources(payload)
        style = self._resolve(payload)
        image, audios, subtitle = await self._fetch_inputs(job, workspace, payload, image_url, audio_urls)
        durations = await self._probe_all(audios)

        self._update_status(job, JobStage.BUILDING, "Building effect graph")
        graph = build_graph(
            style,
            GraphInputs(
                image_index=0,
                audio_indexes=tuple(range(1, len(audios) + 1)),
                subtitle_path=subtitle.path if subtitle else None,
            ),
        )
        total = sum(durations) if durations and None not in durations else None
        output = workspace.allocate(AssetRole.OUTPUT, ".mp4")
        instruction = EncodeInstruction(
            inputs=[image_input(image.path, style.fps)] + [InputSpec(audio.path) for audio in audios],
            output_path=output.path,
            codec_args=video_codec_args(style),
            graph=graph,
            duration=total,
            shortest=True,
        )

        self._update_status(job, JobStage.ENCODING, "Encoding video")
        await self.executor.run(instruction, job.id)
        job.duration_seconds = total
        return self._publish(workspace, [output], payload.outfile_prefix, sequence=False)

    async def _render_per_segment(self, job: Job, workspace: JobWorkspace, payload: VideoRequest) -> List[Artifact]:
        image_url, audio_urls = self._validate_sources(payload)
        style = self._resolve(payload)
        image, audios, subtitle = await self._fetch_inputs(job, workspace, payload, image_url, audio_urls)
        durations = await self._probe_all(audios)

        self._update_status(job, JobStage.BUILDING, "Building effect graph")
        graph = build_graph(
            style,
            GraphInputs(image_index=0, audio_indexes=(1,), subtitle_path=subtitle.path if subtitle else None),
        )
        instructions: List[EncodeInstruction] = []
        outputs: List[LocalAsset] = []
        for index, (audio, duration) in enumerate(zip(audios, durations)):
            output = workspace.allocate(AssetRole.OUTPUT, ".mp4", index=index)
            outputs.append(output)
            instructions.append(
                EncodeInstruction(
                    inputs=[image_input(image.path, style.fps), InputSpec(audio.path)],
                    output_path=output.path,
                    codec_args=video_codec_args(style),
                    graph=graph,
                    duration=duration,
                    shortest=True,
                    label=f"segment_{index + 1:03d}",
                )
            )

        self._update_status(job, JobStage.ENCODING, "Encoding videos")
        for instruction in instructions:
            await self.executor.run(instruction, job.id)
        return self._publish(workspace, outputs, payload.outfile_prefix, sequence=True)

    async def _render_story(self, job: Job, workspace: JobWorkspace, payload: StoryRequest) -> List[Artifact]:
        if not payload.segments:
            raise ConfigError("segments required (>=1)")
        default_image = validate_url(payload.image_url, "image_url") if payload.image_url else None
        images: List[str] = []
        audio_urls: List[str] = []
        for index, segment in enumerate(payload.segments):
            audio_urls.append(validate_url(segment.audio_url, f"segments[{index}].audio_url"))
            if segment.image_url:
                images.append(validate_url(segment.image_url, f"segments[{index}].image_url"))
            elif default_image:
                images.append(default_image)
            else:
                raise ConfigError(f"segments[{index}].image_url or image_url required")
        padding = clamp("padding_seconds", payload.padding_seconds or 0.0, 0.0, MAX_PADDING_SECONDS)
        style = resolve_style(self.settings, payload.style, payload.resolution, payload.fps)

        self._update_status(job, JobStage.FETCHING, "Fetching assets")
        requests = [FetchRequest(url, AssetRole.IMAGE, index) for index, url in enumerate(images)]
        requests += [FetchRequest(url, AssetRole.AUDIO, index) for index, url in enumerate(audio_urls)]
        assets = await self.fetcher.fetch_all(requests, workspace, job.id)
        image_assets = assets[: len(images)]
        audio_assets = assets[len(images) :]
        durations = await self._probe_all(audio_assets)

        self._update_status(job, JobStage.BUILDING, "Planning segments")
        plan = plan_segments(list(zip(image_assets, audio_assets, durations)), padding)
        output = workspace.allocate(AssetRole.OUTPUT, ".mp4")

        self._update_status(job, JobStage.ENCODING, "Encoding segments")
        await self.concatenator.render(plan, style, workspace, output.path, job.id)
        if None not in durations:
            job.duration_seconds = sum(durations) + padding * (len(audio_assets) - 1)
        return self._publish(workspace, [output], payload.outfile_prefix, sequence=False)

    def _validate_sources(self, payload: VideoRequest) -> tuple[str, List[str]]:
        image_url = validate_url(payload.image_url, "image_url")
        if not payload.audio_urls:
            raise ConfigError("audio_urls required (>=1)")
        audio_urls = [validate_url(url, f"audio_urls[{index}]") for index, url in enumerate(payload.audio_urls)]
        if payload.subtitles and payload.subtitles.srt_url:
            validate_url(payload.subtitles.srt_url, "subtitles.srt_url")
        return image_url, audio_urls

    def _resolve(self, payload: VideoRequest) -> ResolvedStyle:
        subtitle_style = payload.subtitles.style if payload.subtitles else None
        return resolve_style(self.settings, payload.style, payload.resolution, payload.fps, subtitle_style)

    async def _fetch_inputs(
        self,
        job: Job,
        workspace: JobWorkspace,
        payload: VideoRequest,
        image_url: str,
        audio_urls: List[str],
    ) -> tuple[LocalAsset, List[LocalAsset], Optional[LocalAsset]]:
        self._update_status(job, JobStage.FETCHING, "Fetching assets")
        requests = [FetchRequest(image_url, AssetRole.IMAGE)]
        requests += [FetchRequest(url, AssetRole.AUDIO, index) for index, url in enumerate(audio_urls)]
        subtitle_url = payload.subtitles.srt_url if payload.subtitles else None
        if subtitle_url:
            requests.append(FetchRequest(subtitle_url.strip(), AssetRole.SUBTITLE))
        assets = await self.fetcher.fetch_all(requests, workspace, job.id)
        image = assets[0]
        audios = assets[1 : 1 + len(audio_urls)]
        subtitle = assets[-1] if subtitle_url else write_inline_subtitles(payload.subtitles, workspace)
        return image, audios, subtitle

    async def _probe_all(self, audios: List[LocalAsset]) -> List[Optional[float]]:
        return list(await asyncio.gather(*(asyncio.to_thread(self.duration_probe, audio.path) for audio in audios)))

    def _publish(
        self,
        workspace: JobWorkspace,
        outputs: List[LocalAsset],
        hint: str | None,
        sequence: bool,
    ) -> List[Artifact]:
        if sequence:
            names = self.artifacts.allocate_names(hint, len(outputs))
        else:
            names = [self.artifacts.allocate_name(hint) for _ in outputs]
        published: List[Artifact] = []
        try:
            for output, name in zip(outputs, names):
                published.append(self.artifacts.publish(output.path, name))
                workspace.release(output.path)
        except OSError:
            self.artifacts.unpublish(published)
            raise
        return published
