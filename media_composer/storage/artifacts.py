from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import time
from typing import Iterable, List, Optional

from media_composer.config import Settings
from media_composer.models.domain import Artifact

_UNSAFE_NAME_RE = re.compile(r"[^\w.-]+", re.ASCII)
NAME_HINT_LIMIT = 64


def safe_name(value: str | None, limit: int = NAME_HINT_LIMIT) -> str:
    return _UNSAFE_NAME_RE.sub("_", str(value or "")).strip("._")[:limit]


class ArtifactManager:
    def __init__(self, settings: Settings, logger: Optional[logging.Logger] = None) -> None:
        self.output_dir = settings.output_dir
        self.path_prefix = settings.output_path_prefix.strip("/")
        self.base_url = settings.public_base_url.rstrip("/")
        self.default_hint = settings.default_outfile_prefix
        self.log = logger or logging.getLogger(__name__)

    def ensure_dirs(self) -> None:
        os.makedirs(self.output_dir, exist_ok=True)

    def allocate_name(self, hint: str | None = None, index: int | None = None, ext: str = ".mp4") -> str:
        prefix = safe_name(hint) or safe_name(self.default_hint) or "out"
        stamp = int(time.time() * 1000)
        name = f"{prefix}_{stamp}_{secrets.token_hex(6)}"
        if index is not None:
            name += f"_{index:03d}"
        return name + ext

    def allocate_names(self, hint: str | None, count: int, ext: str = ".mp4") -> List[str]:
        """Sequence-suffixed names sharing one stem, ``_001`` first."""
        stem = self.allocate_name(hint, ext="")
        return [f"{stem}_{index:03d}{ext}" for index in range(1, count + 1)]

    def relative_path(self, name: str) -> str:
        return f"/{self.path_prefix}/{name}"

    def address(self, name: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{self.path_prefix}/{name}"
        return self.relative_path(name)

    def publish(self, src: str, name: str) -> Artifact:
        self.ensure_dirs()
        dst = os.path.join(self.output_dir, name)
        shutil.move(src, dst)
        size = os.path.getsize(dst)
        self.log.info("artifact published", extra={"artifact": name, "size": size})
        return Artifact(name=name, path=dst, url=self.address(name), rel=self.relative_path(name), size=size)

    def unpublish(self, artifacts: Iterable[Artifact]) -> None:
        for artifact in artifacts:
            try:
                os.remove(artifact.path)
            except FileNotFoundError:
                continue
            self.log.info("artifact withdrawn", extra={"artifact": artifact.name})

    def list_published(self) -> List[str]:
        try:
            return sorted(os.listdir(self.output_dir))
        except FileNotFoundError:
            return []
