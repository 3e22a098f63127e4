from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, validator


class StyleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    motion: Optional[str] = None
    scale_factor: Optional[float] = None
    shake_amplitude: Optional[float] = None
    rotation: Optional[float] = None
    pan_amplitude: Optional[float] = None
    pan_speed: Optional[float] = None
    zoom_peak: Optional[float] = None
    zoom_swing: Optional[float] = None
    zoom_ramp: Optional[float] = None
    contrast: Optional[float] = None
    brightness: Optional[float] = None
    saturation: Optional[float] = None
    noise: Optional[float] = None
    rgb_shift: Optional[float] = None
    tmix: Optional[int] = None
    vignette: Optional[float] = None
    crf: Optional[int] = None
    preset: Optional[str] = None
    audio_bitrate: Optional[str] = None


class SubtitleStyleRequest(BaseModel):
    font_family: Optional[str] = None
    font_size: Optional[int] = None
    color: Optional[str] = Field(default=None, description="Colors in #RRGGBB")
    outline_color: Optional[str] = None
    outline: Optional[int] = None
    bold: Optional[bool] = None
    italic: Optional[bool] = None
    alignment: Optional[int] = None
    margin_bottom: Optional[int] = None


class CaptionRequest(BaseModel):
    text: str = ""
    start: Union[float, str]
    end: Union[float, str]


class SubtitlesRequest(BaseModel):
    srt_url: Optional[str] = None
    srt_text: Optional[str] = None
    captions: Optional[List[CaptionRequest]] = None
    style: Optional[SubtitleStyleRequest] = None

    @property
    def requested(self) -> bool:
        return bool(self.srt_url or self.srt_text or self.captions)


class VideoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: Optional[str] = None
    audio_urls: List[str] = Field(default_factory=list)
    resolution: Optional[str] = None
    fps: Optional[int] = None
    style: Optional[StyleRequest] = None
    subtitles: Optional[SubtitlesRequest] = None
    outfile_prefix: Optional[str] = None

    @validator("audio_urls", pre=True)
    def coerce_audio_urls(cls, value: Any) -> Any:  # noqa: D417
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class StorySegmentRequest(BaseModel):
    audio_url: str
    image_url: Optional[str] = None


class StoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    image_url: Optional[str] = None
    segments: List[StorySegmentRequest] = Field(default_factory=list)
    padding_seconds: float = 0.0
    resolution: Optional[str] = None
    fps: Optional[int] = None
    style: Optional[StyleRequest] = None
    outfile_prefix: Optional[str] = None


class VideoResponse(BaseModel):
    ok: bool = True
    job_id: str
    file: str
    file_url: str
    duration_seconds: Optional[float] = None
    took_ms: int


class VideoBatchResponse(BaseModel):
    ok: bool = True
    job_id: str
    files: List[str]
    file_urls: List[str]
    took_ms: int


class ErrorResponse(BaseModel):
    ok: bool = False
    error_kind: str
    detail: str


class OutputListing(BaseModel):
    files: List[str]
