import io
import stat
from pathlib import Path
from typing import Callable, Dict, Tuple, Union

import httpx
import pytest
from PIL import Image

from media_composer.config import Settings


def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 10, 10)).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeEngine:
    """Shell script standing in for ffmpeg; records each invocation's argv."""

    def __init__(self, root: Path, exit_code: int = 0, stderr_lines: int = 3, write_output: bool = True) -> None:
        self.path = root / "fake-ffmpeg"
        self.calls_path = root / "ffmpeg-calls.log"
        body = [
            "#!/bin/sh",
            'for arg in "$@"; do out="$arg"; done',
            f'printf "%s\\n" "$*" >> "{self.calls_path}"',
            f"i=0; while [ $i -lt {stderr_lines} ]; do echo \"frame=$i fps=24 line $i\" >&2; i=$((i+1)); done",
        ]
        if write_output:
            body.append('printf "fake-mp4" > "$out"')
        body.append(f"exit {exit_code}")
        self.path.write_text("\n".join(body) + "\n")
        self.path.chmod(self.path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    @property
    def calls(self) -> list:
        if not self.calls_path.exists():
            return []
        return [line for line in self.calls_path.read_text().splitlines() if line]


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def factory(**overrides) -> Settings:
        values = {
            "output_dir": str(tmp_path / "output"),
            "tmp_dir": str(tmp_path / "work"),
            "ffmpeg_binary": str(tmp_path / "missing-ffmpeg"),
            "check_engine_on_startup": False,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def engine(tmp_path: Path) -> FakeEngine:
    return FakeEngine(tmp_path)


@pytest.fixture
def make_engine(tmp_path: Path) -> Callable[..., FakeEngine]:
    def factory(name: str = "engine", **kwargs) -> FakeEngine:
        root = tmp_path / name
        root.mkdir(exist_ok=True)
        return FakeEngine(root, **kwargs)

    return factory


@pytest.fixture
def png() -> bytes:
    return png_bytes()


@pytest.fixture
def origin() -> Dict[str, Union[bytes, Tuple[int, bytes]]]:
    """URL -> body (or (status, body)); unknown URLs answer 404."""
    return {}


@pytest.fixture
def transport(origin) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        entry = origin.get(str(request.url))
        if entry is None:
            return httpx.Response(404, content=b"not found")
        if isinstance(entry, tuple):
            status_code, body = entry
            return httpx.Response(status_code, content=body)
        return httpx.Response(200, content=entry)

    return httpx.MockTransport(handler)
