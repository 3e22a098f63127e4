import asyncio
from uuid import uuid4

import pytest

from media_composer.errors import ConcatError
from media_composer.models.domain import AssetRole, LocalAsset
from media_composer.services.concat import (
    PADDING,
    SEGMENT,
    SegmentConcatenator,
    concat_list_line,
    plan_segments,
)
from media_composer.services.encoder import EncodeExecutor
from media_composer.services.style import resolve_style
from media_composer.storage.workspace import JobWorkspace


def asset(name, role):
    return LocalAsset(path=f"/work/{name}", role=role)


def segments(count):
    return [
        (asset(f"image{index}.png", AssetRole.IMAGE), asset(f"audio{index}.mp3", AssetRole.AUDIO), 2.0 + index)
        for index in range(count)
    ]


def test_padding_only_between_segments():
    plan = plan_segments(segments(3), padding_seconds=1.5)
    assert [entry.kind for entry in plan] == [SEGMENT, PADDING, SEGMENT, PADDING, SEGMENT]
    assert plan[1].image == plan[0].image
    assert plan[3].image == plan[2].image
    assert plan[1].duration == 1.5
    assert [entry.source_index for entry in plan if entry.kind == SEGMENT] == [0, 1, 2]


def test_no_padding():
    assert [entry.kind for entry in plan_segments(segments(2))] == [SEGMENT, SEGMENT]
    assert [entry.kind for entry in plan_segments(segments(1), 2.0)] == [SEGMENT]


def test_concat_list_line_quotes_paths():
    assert concat_list_line("/tmp/a b.mp4") == "file '/tmp/a b.mp4'"
    assert concat_list_line("/tmp/it's.mp4") == "file '/tmp/it'\\''s.mp4'"


def test_padding_instruction_is_silent(settings):
    concatenator = SegmentConcatenator(EncodeExecutor(settings))
    style = resolve_style(settings)
    padding = plan_segments(segments(2), 1.0)[1]
    instruction = concatenator.segment_instruction(padding, style, "/work/pad.mp4")
    assert len(instruction.inputs) == 1
    assert instruction.graph.kinds("audio") == ["anullsrc"]
    assert instruction.duration == 1.0
    assert instruction.shortest is False


def render(settings, plan, output_path):
    executor = EncodeExecutor(settings)
    concatenator = SegmentConcatenator(executor)
    style = resolve_style(settings)
    workspace = JobWorkspace(settings.tmp_dir, uuid4())

    async def go():
        with workspace:
            return await concatenator.render(plan, style, workspace, output_path)

    return workspace, asyncio.run(go())


def test_render_encodes_each_entry_then_stream_copies(make_settings, engine, tmp_path):
    settings = make_settings(ffmpeg_binary=str(engine.path))
    output = str(tmp_path / "story.mp4")
    workspace, result = render(settings, plan_segments(segments(3), 0.5), output)
    calls = engine.calls
    assert len(calls) == 6
    assert all("-filter_complex" in call for call in calls[:5])
    assert "anullsrc" in calls[1] and "anullsrc" not in calls[0]
    assert "-f concat -safe 0" in calls[-1]
    assert "-c copy" in calls[-1]
    assert calls[-1].endswith(output)
    assert result.output_path == output
    assert workspace.leftovers() == []


def test_single_entry_skips_concat(make_settings, engine, tmp_path):
    settings = make_settings(ffmpeg_binary=str(engine.path))
    render(settings, plan_segments(segments(1)), str(tmp_path / "one.mp4"))
    assert len(engine.calls) == 1
    assert "-f concat" not in engine.calls[0]


def test_failed_segment_is_a_concat_error(make_settings, make_engine, tmp_path):
    engine = make_engine("broken", exit_code=1)
    settings = make_settings(ffmpeg_binary=str(engine.path))
    with pytest.raises(ConcatError) as excinfo:
        render(settings, plan_segments(segments(2)), str(tmp_path / "x.mp4"))
    assert excinfo.value.error_kind == "concat_error"
    assert "segment 0 encode failed" in excinfo.value.detail
    assert len(engine.calls) == 1


def test_empty_plan(settings, tmp_path):
    with pytest.raises(ConcatError, match="nothing"):
        render(settings, [], str(tmp_path / "x.mp4"))
