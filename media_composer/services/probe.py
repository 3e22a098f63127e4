from __future__ import annotations

import logging
from typing import Optional

from moviepy.audio.io.AudioFileClip import AudioFileClip

log = logging.getLogger(__name__)


def probe_duration(path: str) -> Optional[float]:
    try:
        clip = AudioFileClip(path)
    except Exception:
        log.warning("audio duration probe failed", extra={"path": path}, exc_info=True)
        return None
    try:
        duration = clip.duration
    finally:
        clip.close()
    return float(duration) if duration else None
