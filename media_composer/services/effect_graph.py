from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from media_composer.models.domain import MotionMode, ResolvedStyle, SubtitleStyle
from media_composer.services.style import overscan_size

SAMPLE_RATE = 44100
SAMPLE_FORMAT = "fltp"
CHANNEL_LAYOUT = "stereo"
PIXEL_FORMAT = "yuv420p"
ZOOM_FREQUENCY = 0.5
ROTATION_SLOW_SHARE = 0.7

Params = Tuple[Tuple[str, Any], ...]


@dataclass(frozen=True)
class Stage:
    """One filter node: ``[inputs]kind=k=v:k=v[outputs]``."""

    kind: str
    params: Params = ()
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()

    def param(self, key: str, default: Any = None) -> Any:
        for name, value in self.params:
            if name == key:
                return value
        return default


@dataclass(frozen=True)
class GraphInputs:
    image_index: int = 0
    audio_indexes: Tuple[int, ...] = (1,)
    subtitle_path: Optional[str] = None


@dataclass(frozen=True)
class EffectGraph:
    video: Tuple[Stage, ...]
    audio: Tuple[Stage, ...]
    video_out: str
    audio_out: str

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self.video + self.audio

    def kinds(self, chain: str = "video") -> List[str]:
        stages = self.video if chain == "video" else self.audio
        return [stage.kind for stage in stages]

    def labels(self) -> List[str]:
        return [label for stage in self.stages for label in stage.outputs]


@dataclass
class _Chain:
    stages: List[Stage] = field(default_factory=list)
    head: str = ""


class EffectGraphBuilder:
    def __init__(self, style: ResolvedStyle) -> None:
        self.style = style
        self._counter = 0

    def build(self, inputs: GraphInputs) -> EffectGraph:
        self._counter = 0
        video = self._build_video(inputs)
        audio = self._build_audio(inputs)
        return EffectGraph(
            video=tuple(video.stages),
            audio=tuple(audio.stages),
            video_out=video.head,
            audio_out=audio.head,
        )

    def _label(self, prefix: str) -> str:
        label = f"{prefix}{self._counter}"
        self._counter += 1
        return label

    def _push(self, chain: _Chain, prefix: str, kind: str, params: Params = (), sources: Sequence[str] | None = None) -> str:
        inputs = tuple(sources) if sources is not None else ((chain.head,) if chain.head else ())
        output = self._label(prefix)
        chain.stages.append(Stage(kind=kind, params=params, inputs=inputs, outputs=(output,)))
        chain.head = output
        return output

    def _build_video(self, inputs: GraphInputs) -> _Chain:
        chain = _Chain(head=f"{inputs.image_index}:v")
        self._base_and_motion(chain)
        self._color_and_texture(chain)
        if inputs.subtitle_path:
            self._push(
                chain,
                "v",
                "subtitles",
                (
                    ("filename", escape_filter_path(inputs.subtitle_path)),
                    ("force_style", force_style(self.style.subtitle_style)),
                ),
            )
        self._push(chain, "v", "fps", (("fps", self.style.fps),))
        self._push(chain, "v", "format", (("pix_fmts", PIXEL_FORMAT),))
        return chain

    def _base_and_motion(self, chain: _Chain) -> None:
        style = self.style
        target = style.resolution
        cover = overscan_size(target, style.overscan)
        self._push(
            chain,
            "v",
            "scale",
            (("w", cover.width), ("h", cover.height), ("force_original_aspect_ratio", "increase")),
        )
        self._push(chain, "v", "setsar", (("sar", 1),))

        if style.motion == MotionMode.SHAKE:
            amp = fmt_number(style.shake_amplitude)
            if style.rotation:
                # tilt the overscanned frame so the crop below never sees its corners
                self._push(chain, "v", "rotate", (("a", rotation_expression(style.rotation)), ("c", "black")))
            self._push(
                chain,
                "v",
                "crop",
                (
                    ("w", target.width),
                    ("h", target.height),
                    ("x", f"(in_w-out_w)/2+{amp}*sin(2*t)"),
                    ("y", f"(in_h-out_h)/2+{amp}*sin(1.5*t)"),
                ),
            )
        elif style.motion == MotionMode.PAN:
            amp = fmt_number(style.pan_amplitude)
            speed = fmt_number(style.pan_speed)
            self._push(
                chain,
                "v",
                "crop",
                (
                    ("w", target.width),
                    ("h", target.height),
                    ("x", f"(in_w-out_w)/2+{amp}*sin({speed}*t)"),
                    ("y", "(in_h-out_h)/2"),
                ),
            )
        elif style.motion == MotionMode.ZOOM:
            self._push(chain, "v", "crop", (("w", cover.width), ("h", cover.height)))
            self._push(
                chain,
                "v",
                "zoompan",
                (
                    ("z", zoom_expression(style)),
                    ("d", 1),
                    ("x", "iw/2-(iw/zoom/2)"),
                    ("y", "ih/2-(ih/zoom/2)"),
                    ("s", str(target)),
                    ("fps", style.fps),
                ),
            )
        else:
            self._push(chain, "v", "crop", (("w", target.width), ("h", target.height)))

    def _color_and_texture(self, chain: _Chain) -> None:
        style = self.style
        eq: List[Tuple[str, Any]] = []
        if style.contrast is not None:
            eq.append(("contrast", style.contrast))
        if style.brightness is not None:
            eq.append(("brightness", style.brightness))
        if style.saturation is not None:
            eq.append(("saturation", style.saturation))
        if eq:
            self._push(chain, "v", "eq", tuple(eq))
        if style.noise:
            self._push(chain, "v", "noise", (("alls", style.noise), ("allf", "t")))
        if style.rgb_shift:
            self._push(chain, "v", "rgbashift", (("rh", style.rgb_shift), ("bh", -style.rgb_shift)))
        if style.tmix_frames:
            self._push(chain, "v", "tmix", (("frames", style.tmix_frames),))
        if style.vignette:
            self._push(chain, "v", "vignette", (("angle", style.vignette * math.pi / 2),))

    def _build_audio(self, inputs: GraphInputs) -> _Chain:
        chain = _Chain()
        if not inputs.audio_indexes:
            self._push(chain, "a", "anullsrc", (("r", SAMPLE_RATE), ("cl", CHANNEL_LAYOUT)), sources=())
            return chain
        normalized = [self._normalize_audio(index) for index in inputs.audio_indexes]
        if len(normalized) == 1:
            chain.head = normalized[0][-1].outputs[0]
            chain.stages.extend(normalized[0])
            return chain
        for stages in normalized:
            chain.stages.extend(stages)
        self._push(
            chain,
            "a",
            "concat",
            (("n", len(normalized)), ("v", 0), ("a", 1)),
            sources=[stages[-1].outputs[0] for stages in normalized],
        )
        return chain

    def _normalize_audio(self, index: int) -> List[Stage]:
        segment = _Chain(head=f"{index}:a")
        self._push(
            segment,
            "a",
            "aformat",
            (
                ("sample_fmts", SAMPLE_FORMAT),
                ("sample_rates", SAMPLE_RATE),
                ("channel_layouts", CHANNEL_LAYOUT),
            ),
        )
        self._push(segment, "a", "aresample", (("osr", SAMPLE_RATE),))
        return segment.stages


def build_graph(style: ResolvedStyle, inputs: GraphInputs) -> EffectGraph:
    return EffectGraphBuilder(style).build(inputs)


def zoom_expression(style: ResolvedStyle) -> str:
    ramp = fmt_number(style.zoom_ramp)
    rise = fmt_number(style.zoom_peak - 1.0)
    peak = fmt_number(style.zoom_peak)
    swing = fmt_number(style.zoom_swing)
    freq = fmt_number(ZOOM_FREQUENCY)
    return (
        f"min({fmt_number(style.zoom_max)},"
        f"if(lt(it,{ramp}),1+{rise}*it/{ramp},{peak}+{swing}*sin({freq}*(it-{ramp}))))"
    )


def rotation_expression(amplitude: float) -> str:
    slow = fmt_number(amplitude * ROTATION_SLOW_SHARE)
    fast = fmt_number(amplitude * (1.0 - ROTATION_SLOW_SHARE))
    return f"{slow}*sin(1.7*t)+{fast}*cos(9*t)"


def force_style(style: SubtitleStyle) -> str:
    return ",".join(
        [
            f"Fontname={style.font_name}",
            f"Fontsize={style.font_size}",
            f"PrimaryColour={style.primary_colour}",
            f"OutlineColour={style.outline_colour}",
            f"BackColour={style.back_colour}",
            f"BorderStyle={style.border_style}",
            f"Outline={style.outline}",
            f"Shadow={style.shadow}",
            f"Alignment={style.alignment}",
            f"MarginV={style.margin_v}",
            f"Bold={'-1' if style.bold else '0'}",
            f"Italic={'-1' if style.italic else '0'}",
        ]
    )


def escape_filter_path(path: str) -> str:
    # option-level escaping; the serializer adds the graph-level quotes
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def fmt_number(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        text = f"{value:.6f}".rstrip("0").rstrip(".")
        return "0" if text in ("-0", "") else text
    return str(value)
