from __future__ import annotations

import re
from typing import List, Optional, Union

from media_composer.errors import ConfigError
from media_composer.models.api import CaptionRequest, SubtitlesRequest
from media_composer.models.domain import AssetRole, LocalAsset
from media_composer.storage.workspace import JobWorkspace

_TIMESTAMP_RE = re.compile(r"^(\d{1,2}):(\d{2}):(\d{2})[,.](\d{1,3})$")


def format_timestamp(seconds: float) -> str:
    total_ms = int(round(max(0, seconds) * 1000))
    hours = total_ms // 3_600_000
    minutes = (total_ms % 3_600_000) // 60_000
    secs = (total_ms % 60_000) // 1000
    millis = total_ms % 1000
    return f"{hours:02}:{minutes:02}:{secs:02},{millis:03}"


def parse_timestamp(value: Union[float, int, str]) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    match = _TIMESTAMP_RE.match(text)
    if match:
        hours, minutes, seconds = (int(part) for part in match.groups()[:3])
        millis = int(match.group(4).ljust(3, "0"))
        return hours * 3600 + minutes * 60 + seconds + millis / 1000.0
    try:
        return float(text)
    except ValueError as exc:
        raise ConfigError(f"invalid caption timestamp {value!r}") from exc


def captions_to_srt(captions: List[CaptionRequest]) -> str:
    lines: List[str] = []
    for idx, caption in enumerate(captions, start=1):
        start = parse_timestamp(caption.start)
        end = parse_timestamp(caption.end)
        if start < 0 or end <= start:
            raise ConfigError(f"caption {idx} must end after it starts")
        text = (caption.text or "").replace("\r\n", "\n").strip()
        lines.append(f"{idx}\n{format_timestamp(start)} --> {format_timestamp(end)}\n{text}\n")
    return "\n".join(lines)


def write_inline_subtitles(request: Optional[SubtitlesRequest], workspace: JobWorkspace) -> Optional[LocalAsset]:
    """Materialize inline SRT text or a captions list; URLs go through the fetcher."""
    if request is None or request.srt_url:
        return None
    if request.srt_text and request.srt_text.strip():
        return workspace.write_text(AssetRole.SUBTITLE, ".srt", request.srt_text)
    if request.captions:
        return workspace.write_text(AssetRole.SUBTITLE, ".srt", captions_to_srt(request.captions))
    return None
