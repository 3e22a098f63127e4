from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class JobStage(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    BUILDING = "building"
    ENCODING = "encoding"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AssetRole(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    SUBTITLE = "subtitle"
    INTERMEDIATE = "intermediate"
    CONCAT_LIST = "concat_list"
    OUTPUT = "output"


class MotionMode(str, Enum):
    NONE = "none"
    SHAKE = "shake"
    PAN = "pan"
    ZOOM = "zoom"


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class LocalAsset:
    path: str
    role: AssetRole
    index: int = 0
    source_url: Optional[str] = None
    size: Optional[int] = None


@dataclass(frozen=True)
class SubtitleStyle:
    font_name: str = "Arial"
    font_size: int = 36
    primary_colour: str = "&H00FFFFFF"
    outline_colour: str = "&H00000000"
    back_colour: str = "&H64000000"
    border_style: int = 1
    outline: int = 2
    shadow: int = 1
    alignment: int = 2
    margin_v: int = 48
    bold: bool = False
    italic: bool = False


@dataclass(frozen=True)
class ResolvedStyle:
    """Every style knob after defaulting and clamping; the builder reads nothing else."""

    resolution: Resolution
    fps: int
    motion: MotionMode = MotionMode.NONE
    overscan: float = 1.0
    shake_amplitude: float = 5.0
    rotation: Optional[float] = None
    pan_amplitude: float = 20.0
    pan_speed: float = 0.3
    zoom_peak: float = 1.05
    zoom_swing: float = 0.02
    zoom_ramp: float = 4.0
    zoom_max: float = 1.1
    contrast: Optional[float] = None
    brightness: Optional[float] = None
    saturation: Optional[float] = None
    noise: Optional[int] = None
    rgb_shift: Optional[int] = None
    tmix_frames: Optional[int] = None
    vignette: Optional[float] = None
    crf: int = 23
    preset: str = "veryfast"
    audio_bitrate: str = "128k"
    subtitle_style: SubtitleStyle = field(default_factory=SubtitleStyle)


class JobStatusHistory(BaseModel):
    stage: JobStage
    message: str
    occurred_at: datetime = Field(default_factory=datetime.utcnow)


class Artifact(BaseModel):
    name: str
    path: str
    url: str
    rel: str
    size: Optional[int] = None


class Job(BaseModel):
    id: UUID
    mode: str
    stage: JobStage = JobStage.PENDING
    status_history: List[JobStatusHistory] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class JobOutcome(BaseModel):
    ok: bool
    job_id: UUID
    artifacts: List[Artifact] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    took_ms: int = 0
    error_kind: Optional[str] = None
    detail: Optional[str] = None

    @property
    def artifact_addresses(self) -> List[str]:
        return [artifact.url for artifact in self.artifacts]
