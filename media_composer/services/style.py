from __future__ import annotations

import logging
import math
import re
from typing import Optional

from media_composer.config import Settings
from media_composer.errors import ConfigError
from media_composer.models.api import StyleRequest, SubtitleStyleRequest
from media_composer.models.domain import MotionMode, Resolution, ResolvedStyle, SubtitleStyle

log = logging.getLogger(__name__)

PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)
MAX_DIMENSION = 4096
ZOOM_MAX = 1.1

_RESOLUTION_RE = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")
_BITRATE_RE = re.compile(r"^\d{2,3}k$")
_FONT_UNSAFE_RE = re.compile(r"[,:;'\"\[\]=\\]")


def parse_resolution(value: str) -> Resolution:
    match = _RESOLUTION_RE.match(value or "")
    if not match:
        raise ConfigError(f"resolution must look like WIDTHxHEIGHT, got {value!r}")
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise ConfigError(f"resolution must be positive, got {value!r}")
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise ConfigError(f"resolution exceeds {MAX_DIMENSION}px, got {value!r}")
    if width % 2 or height % 2:
        raise ConfigError(f"resolution must use even dimensions for yuv420p, got {value!r}")
    return Resolution(width, height)


def overscan_size(resolution: Resolution, factor: float) -> Resolution:
    """Smallest even frame that covers ``resolution`` scaled by ``factor``."""
    width = int(math.ceil(resolution.width * factor / 2.0)) * 2
    height = int(math.ceil(resolution.height * factor / 2.0)) * 2
    return Resolution(max(width, resolution.width), max(height, resolution.height))


def max_rotation(target: Resolution, cover: Resolution, offset: float) -> float:
    """Largest tilt, in radians, that keeps a crop shifted by ``offset`` inside the rotated cover frame."""
    margin_x = (cover.width - target.width) / 2.0 - offset
    margin_y = (cover.height - target.height) / 2.0 - offset
    if margin_x <= 0 or margin_y <= 0:
        return 0.0
    reach = min(margin_x / (target.height / 2.0 + offset), margin_y / (target.width / 2.0 + offset))
    return math.asin(min(reach, 1.0))


def clamp(name: str, value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        raise ConfigError(f"{name} must be a finite number")
    if value < low or value > high:
        clamped = min(max(value, low), high)
        log.warning(
            "style parameter clamped",
            extra={"parameter": name, "requested": value, "applied": clamped},
        )
        return clamped
    return value


def _optional(name: str, value: Optional[float], low: float, high: float) -> Optional[float]:
    if value is None:
        return None
    return clamp(name, float(value), low, high)


def resolve_motion(value: Optional[str]) -> MotionMode:
    if not value:
        return MotionMode.NONE
    try:
        return MotionMode(value.strip().lower())
    except ValueError:
        log.warning("unknown motion mode, falling back to none", extra={"motion": value})
        return MotionMode.NONE


def resolve_style(
    settings: Settings,
    style: StyleRequest | None = None,
    resolution: str | None = None,
    fps: int | None = None,
    subtitle_style: SubtitleStyleRequest | None = None,
) -> ResolvedStyle:
    style = style or StyleRequest()
    target = parse_resolution(resolution or settings.default_resolution)
    motion = resolve_motion(style.motion)

    default_overscan = 1.0 if motion == MotionMode.NONE else settings.overscan_factor
    overscan = clamp("scale_factor", style.scale_factor or default_overscan, 1.0, 1.5)
    cover = overscan_size(target, overscan)
    margin_x = (cover.width - target.width) / 2.0
    margin_y = (cover.height - target.height) / 2.0

    shake = clamp(
        "shake_amplitude",
        5.0 if style.shake_amplitude is None else style.shake_amplitude,
        0.0,
        min(margin_x, margin_y),
    )
    rotation = None
    if motion == MotionMode.SHAKE and style.rotation is not None:
        rotation = clamp("rotation", style.rotation, 0.0, max_rotation(target, cover, shake)) or None
    pan = clamp("pan_amplitude", 20.0 if style.pan_amplitude is None else style.pan_amplitude, 0.0, margin_x)
    pan_speed = clamp("pan_speed", style.pan_speed or 0.3, 0.01, 5.0)

    zoom_peak = clamp("zoom_peak", style.zoom_peak or 1.05, 1.0, ZOOM_MAX)
    zoom_swing = clamp(
        "zoom_swing",
        0.02 if style.zoom_swing is None else style.zoom_swing,
        0.0,
        min(ZOOM_MAX - zoom_peak, zoom_peak - 1.0),
    )
    zoom_ramp = clamp("zoom_ramp", style.zoom_ramp or 4.0, 0.5, 60.0)

    vignette = _optional("vignette", style.vignette, 0.0, 1.0)
    noise = _optional("noise", style.noise, 0.0, 100.0)
    rgb_shift = _optional("rgb_shift", style.rgb_shift, 0.0, 20.0)
    tmix = _optional("tmix", style.tmix, 2, 5)

    preset = (style.preset or settings.default_preset).strip().lower()
    if preset not in PRESETS:
        log.warning("unknown encoder preset, using default", extra={"preset": preset})
        preset = settings.default_preset
    audio_bitrate = (style.audio_bitrate or settings.default_audio_bitrate).strip().lower()
    if not _BITRATE_RE.match(audio_bitrate):
        log.warning("invalid audio bitrate, using default", extra={"audio_bitrate": audio_bitrate})
        audio_bitrate = settings.default_audio_bitrate

    return ResolvedStyle(
        resolution=target,
        fps=int(clamp("fps", fps or settings.default_fps, 1, 60)),
        motion=motion,
        overscan=overscan,
        shake_amplitude=shake,
        rotation=rotation,
        pan_amplitude=pan,
        pan_speed=pan_speed,
        zoom_peak=zoom_peak,
        zoom_swing=zoom_swing,
        zoom_ramp=zoom_ramp,
        zoom_max=ZOOM_MAX,
        contrast=_optional("contrast", style.contrast, 0.0, 3.0),
        brightness=_optional("brightness", style.brightness, -1.0, 1.0),
        saturation=_optional("saturation", style.saturation, 0.0, 3.0),
        noise=int(round(noise)) if noise else None,
        rgb_shift=int(round(rgb_shift)) if rgb_shift else None,
        tmix_frames=int(tmix) if tmix is not None else None,
        vignette=vignette or None,
        crf=int(clamp("crf", settings.default_crf if style.crf is None else style.crf, 0, 51)),
        preset=preset,
        audio_bitrate=audio_bitrate,
        subtitle_style=resolve_subtitle_style(subtitle_style),
    )


def ass_color(value: str) -> str:
    hex_value = value.lstrip("#")
    if len(hex_value) != 6 or not re.fullmatch(r"[0-9a-fA-F]{6}", hex_value):
        return "&H00FFFFFF"
    r = hex_value[0:2]
    g = hex_value[2:4]
    b = hex_value[4:6]
    return f"&H00{b}{g}{r}".upper()


def resolve_subtitle_style(style: SubtitleStyleRequest | None) -> SubtitleStyle:
    defaults = SubtitleStyle()
    if style is None:
        return defaults
    font_name = defaults.font_name
    if style.font_family:
        font_name = _FONT_UNSAFE_RE.sub("", style.font_family).strip() or defaults.font_name
    return SubtitleStyle(
        font_name=font_name,
        font_size=int(clamp("font_size", style.font_size or defaults.font_size, 8, 120)),
        primary_colour=ass_color(style.color) if style.color else defaults.primary_colour,
        outline_colour=ass_color(style.outline_color) if style.outline_color else defaults.outline_colour,
        back_colour=defaults.back_colour,
        border_style=defaults.border_style,
        outline=int(clamp("outline", defaults.outline if style.outline is None else style.outline, 0, 10)),
        shadow=defaults.shadow,
        alignment=int(clamp("alignment", style.alignment or defaults.alignment, 1, 9)),
        margin_v=int(
            clamp("margin_bottom", defaults.margin_v if style.margin_bottom is None else style.margin_bottom, 0, 400)
        ),
        bold=bool(style.bold) if style.bold is not None else defaults.bold,
        italic=bool(style.italic) if style.italic is not None else defaults.italic,
    )
