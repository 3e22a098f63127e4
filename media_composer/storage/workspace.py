from __future__ import annotations

import logging
import os
import shutil
from typing import List, Optional
from uuid import UUID, uuid4

from media_composer.models.domain import AssetRole, LocalAsset


class JobWorkspace:
    """Per-job scratch directory; everything allocated here is removed on exit."""

    def __init__(self, root: str, job_id: UUID, logger: Optional[logging.Logger] = None) -> None:
        self.job_id = job_id
        self.path = os.path.join(root, f"job_{job_id.hex}")
        self.log = logger or logging.getLogger(__name__)
        self._assets: List[LocalAsset] = []
        self._released: set[str] = set()

    def __enter__(self) -> "JobWorkspace":
        os.makedirs(self.path, exist_ok=True)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def allocate(self, role: AssetRole, suffix: str, index: int = 0, source_url: str | None = None) -> LocalAsset:
        name = f"{role.value}_{index:03d}_{uuid4().hex[:8]}{suffix}"
        asset = LocalAsset(path=os.path.join(self.path, name), role=role, index=index, source_url=source_url)
        self._assets.append(asset)
        return asset

    def write_text(self, role: AssetRole, suffix: str, text: str, index: int = 0) -> LocalAsset:
        asset = self.allocate(role, suffix, index=index)
        with open(asset.path, "w", encoding="utf-8") as f:
            f.write(text)
        return asset

    def release(self, path: str) -> None:
        """Stop tracking a file that has been moved out of the workspace."""
        self._released.add(path)

    def leftovers(self) -> List[str]:
        if not os.path.isdir(self.path):
            return []
        return sorted(os.listdir(self.path))

    def cleanup(self) -> int:
        removed = 0
        for asset in self._assets:
            if asset.path in self._released:
                continue
            try:
                os.remove(asset.path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                self.log.warning(
                    "temporary file cleanup failed",
                    extra={"job_id": str(self.job_id), "path": asset.path},
                    exc_info=True,
                )
        if os.path.isdir(self.path):
            shutil.rmtree(self.path, ignore_errors=True)
        self.log.debug("workspace cleaned", extra={"job_id": str(self.job_id), "removed": removed})
        return removed
