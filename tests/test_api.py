import os

import httpx
import pytest
from fastapi.testclient import TestClient

from media_composer import main
from media_composer.clients.fetcher import AssetFetcher
from media_composer.config import get_settings
from media_composer.main import app, get_video_service
from media_composer.services.video_service import VideoService


client = TestClient(app)

IMAGE_URL = "https://assets.test/cover.png"
AUDIO_URLS = ["https://assets.test/a1.mp3", "https://assets.test/a2.mp3", "https://assets.test/a3.mp3"]
DURATIONS = {b"a1": 2.5, b"a2": 4.0, b"a3": 1.0}


def fake_probe(path):
    with open(path, "rb") as f:
        return DURATIONS.get(f.read())


@pytest.fixture
def hits():
    return []


@pytest.fixture
def install(monkeypatch, make_settings, origin, png, hits):
    origin[IMAGE_URL] = png
    for index, url in enumerate(AUDIO_URLS, start=1):
        origin[url] = f"a{index}".encode()

    def handler(request):
        url = str(request.url)
        hits.append(url)
        entry = origin.get(url)
        if entry is None:
            return httpx.Response(404, content=b"not found")
        return httpx.Response(200, content=entry)

    def factory(**overrides):
        settings = make_settings(**overrides)
        service = VideoService(
            settings=settings,
            fetcher=AssetFetcher(settings, transport=httpx.MockTransport(handler)),
            duration_probe=fake_probe,
        )
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_video_service] = lambda: service
        return settings

    monkeypatch.setattr(main, "_engine_missing", None)
    yield factory
    app.dependency_overrides.clear()


@pytest.fixture
def with_engine(install, engine):
    return install(ffmpeg_binary=str(engine.path))


def test_healthz():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert "POST /make/segments" in client.get("/").text


def test_segments_with_shake(with_engine, engine):
    payload = {
        "image_url": IMAGE_URL,
        "audio_urls": AUDIO_URLS[:2],
        "style": {"motion": "shake"},
        "outfile_prefix": "promo clip",
    }
    resp = client.post("/make/segments", json=payload)
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["duration_seconds"] == 6.5
    assert body["file"].startswith("/output/promo_clip_")
    assert body["file_url"] == body["file"]
    assert os.listdir(with_engine.output_dir) == [body["file"].rsplit("/", 1)[1]]
    assert len(engine.calls) == 1
    call = engine.calls[0]
    assert "-t 6.5 -shortest" in call
    assert "sin(2*t)" in call
    assert "concat=n=2:v=0:a=1" in call
    assert os.listdir(with_engine.tmp_dir) == []


def test_single_audio_url_string_is_accepted(with_engine, engine):
    resp = client.post("/make/segments", json={"image_url": IMAGE_URL, "audio_urls": AUDIO_URLS[0]})
    assert resp.status_code == 200
    assert resp.json()["duration_seconds"] == 2.5


def test_public_base_url(install, engine):
    install(ffmpeg_binary=str(engine.path), public_base_url="https://cdn.test")
    body = client.post("/make/segments", json={"image_url": IMAGE_URL, "audio_urls": AUDIO_URLS[:1]}).json()
    assert body["file_url"] == "https://cdn.test" + body["file"]


def test_missing_audio_is_rejected_before_any_work(with_engine, engine, hits):
    resp = client.post("/make/segments", json={"image_url": IMAGE_URL, "audio_urls": []})
    assert resp.status_code == 400
    assert resp.json() == {"ok": False, "error_kind": "config_error", "detail": "audio_urls required (>=1)"}
    assert hits == []
    assert engine.calls == []


def test_invalid_resolution_is_a_config_error(with_engine, engine, hits):
    resp = client.post(
        "/make/segments",
        json={"image_url": IMAGE_URL, "audio_urls": AUDIO_URLS[:1], "resolution": "721x1280"},
    )
    assert resp.status_code == 400
    assert resp.json()["error_kind"] == "config_error"
    assert hits == []


def test_image_fetch_failure(with_engine, engine):
    resp = client.post(
        "/make/segments",
        json={"image_url": "https://assets.test/missing.png", "audio_urls": AUDIO_URLS[:1]},
    )
    assert resp.status_code == 502
    body = resp.json()
    assert body["error_kind"] == "fetch_error"
    assert "404" in body["detail"]
    assert engine.calls == []
    assert os.listdir(with_engine.tmp_dir) == []


def test_encode_failure_returns_diagnostics(install, make_engine):
    engine = make_engine("broken", exit_code=1, stderr_lines=30)
    settings = install(ffmpeg_binary=str(engine.path))
    resp = client.post("/make/segments", json={"image_url": IMAGE_URL, "audio_urls": AUDIO_URLS[:1]})
    assert resp.status_code == 500
    body = resp.json()
    assert body["error_kind"] == "encode_error"
    assert body["detail"].startswith("ffmpeg exit 1")
    assert "line 29" in body["detail"]
    assert len(body["detail"]) <= 1500 + len("ffmpeg exit 1\n")
    assert not os.path.exists(settings.output_dir) or os.listdir(settings.output_dir) == []
    assert os.listdir(settings.tmp_dir) == []


def test_missing_engine_refuses_jobs(install, hits):
    settings = install()
    payload = {"image_url": IMAGE_URL, "audio_urls": AUDIO_URLS[:1]}
    resp = client.post("/make/segments", json=payload)
    assert resp.status_code == 503
    assert resp.json()["error_kind"] == "engine_not_found"
    assert not os.path.exists(settings.output_dir) or os.listdir(settings.output_dir) == []

    fetched = len(hits)
    resp = client.post("/make/story", json={"image_url": IMAGE_URL, "segments": [{"audio_url": AUDIO_URLS[0]}]})
    assert resp.status_code == 503
    assert len(hits) == fetched


def test_per_segment_outputs(with_engine, engine):
    payload = {"image_url": IMAGE_URL, "audio_urls": AUDIO_URLS, "outfile_prefix": "chapter"}
    resp = client.post("/make/per-segment", json=payload)
    assert resp.status_code == 200
    body = resp.json()
    assert [name[-8:] for name in body["files"]] == ["_001.mp4", "_002.mp4", "_003.mp4"]
    assert all(name.startswith("/output/chapter_") for name in body["files"])
    assert body["file_urls"] == body["files"]
    assert len(engine.calls) == 3
    assert sorted(os.listdir(with_engine.output_dir)) == sorted(name.rsplit("/", 1)[1] for name in body["files"])


def test_per_segment_subtitles_apply_to_every_output(with_engine, engine):
    payload = {
        "image_url": IMAGE_URL,
        "audio_urls": AUDIO_URLS[:2],
        "subtitles": {"captions": [{"text": "hello", "start": 0, "end": 1}], "style": {"font_size": 40}},
    }
    resp = client.post("/make/per-segment", json=payload)
    assert resp.status_code == 200
    assert all("subtitles=filename=" in call and "Fontsize=40" in call for call in engine.calls)


def test_story_with_padding(with_engine, engine):
    payload = {
        "image_url": IMAGE_URL,
        "segments": [{"audio_url": AUDIO_URLS[0]}, {"audio_url": AUDIO_URLS[1]}],
        "padding_seconds": 1,
        "style": {"motion": "zoom"},
    }
    resp = client.post("/make/story", json=payload)
    assert resp.status_code == 200
    body = resp.json()
    assert body["duration_seconds"] == 7.5
    calls = engine.calls
    assert len(calls) == 4
    assert "anullsrc" in calls[1]
    assert "-f concat -safe 0" in calls[-1]
    assert os.listdir(with_engine.tmp_dir) == []


def test_story_requires_an_image(with_engine, engine):
    resp = client.post("/make/story", json={"segments": [{"audio_url": AUDIO_URLS[0]}]})
    assert resp.status_code == 400
    assert "image_url" in resp.json()["detail"]
    assert engine.calls == []


def test_story_rejects_subtitles(with_engine, engine):
    payload = {
        "image_url": IMAGE_URL,
        "segments": [{"audio_url": AUDIO_URLS[0]}],
        "subtitles": {"srt_text": "1\n00:00:00,000 --> 00:00:01,000\nhi\n"},
    }
    resp = client.post("/make/story", json=payload)
    assert resp.status_code == 400
    assert resp.json()["error_kind"] == "config_error"


def test_debug_listing(install, engine):
    install(ffmpeg_binary=str(engine.path))
    assert client.get("/__debug__/ls").status_code == 404

    install(ffmpeg_binary=str(engine.path), debug_listing=True)
    client.post("/make/segments", json={"image_url": IMAGE_URL, "audio_urls": AUDIO_URLS[:1]})
    resp = client.get("/__debug__/ls")
    assert resp.status_code == 200
    assert len(resp.json()["files"]) == 1


def test_non_finite_style_value_is_a_config_error(with_engine, engine, hits):
    body = (
        '{"image_url": "%s", "audio_urls": ["%s"], "style": {"motion": "shake", "scale_factor": NaN}}'
        % (IMAGE_URL, AUDIO_URLS[0])
    )
    resp = client.post("/make/segments", content=body, headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error_kind"] == "config_error"
    assert "scale_factor" in resp.json()["detail"]
    assert hits == []
    assert engine.calls == []
