# cratepack/patches.py
"""
Overlay patch application.

Every patch of an overlay series is dry-run first and then applied, in series
order, with `git apply` when the working copy is a git checkout and with
`patch` otherwise. The first patch that does not apply stops the series with
PatchApplicationError: a stale override must never be skipped silently.
Applied patches are recorded (with their sha256) in a JSONL transparency log.
"""

from __future__ import annotations
import json
import time
import hashlib
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cratepack.errors import PatchApplicationError
from cratepack.logging import get_logger
from cratepack.overlays import Overlay, PatchEntry
from cratepack.process import CommandResult, run_command

logger = get_logger("patches")


def _sha256_of_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


class PatchManager:
    def __init__(self, runner: Callable[..., CommandResult] = run_command,
                 transparency_log: Optional[Path] = None, timeout: Optional[int] = 300):
        self.runner = runner
        self.transparency_log = Path(transparency_log) if transparency_log else None
        self.timeout = timeout

    def _append_transparency(self, event: Dict) -> None:
        if self.transparency_log is None:
            return
        self.transparency_log.parent.mkdir(parents=True, exist_ok=True)
        with open(self.transparency_log, "a", encoding="utf-8") as f:
            f.write(json.dumps({"ts": int(time.time()), **event}, ensure_ascii=False) + "\n")

    def _apply_patch_command(self, patch: PatchEntry, source_dir: Path, dry_run: bool = False) -> CommandResult:
        if (source_dir / ".git").is_dir():
            cmd = ["git", "-C", str(source_dir), "apply", f"-p{patch.strip}"]
            if dry_run:
                cmd.append("--check")
            cmd.append(str(patch.path))
            return self.runner(cmd, cwd=source_dir, timeout=self.timeout)
        cmd = ["patch", "--batch", "--forward", f"-p{patch.strip}", "-i", str(patch.path)]
        if dry_run:
            cmd.insert(1, "--dry-run")
        return self.runner(cmd, cwd=source_dir, timeout=self.timeout)

    def apply_patch(self, patch: PatchEntry, source_dir: Path) -> str:
        """Check then apply one patch; returns the tool output."""
        check = self._apply_patch_command(patch, source_dir, dry_run=True)
        if not check.ok:
            raise PatchApplicationError(f"patch {patch.name} does not apply", patch=patch.name,
                                        output=check.tail())
        res = self._apply_patch_command(patch, source_dir)
        if not res.ok:
            raise PatchApplicationError(f"patch {patch.name} failed to apply", patch=patch.name,
                                        output=res.tail())
        return (res.stdout + res.stderr).strip()

    def apply_series(self, overlay: Optional[Overlay], source_dir: Path,
                     name: Optional[str] = None, version: Optional[str] = None) -> List[str]:
        """Apply the overlay's series to source_dir in order. Returns applied patch names."""
        if overlay is None or not overlay.patches:
            return []
        applied: List[str] = []
        for patch in overlay.patches:
            try:
                self.apply_patch(patch, Path(source_dir))
            except PatchApplicationError as e:
                e.name, e.version = name, version
                logger.error("%s %s: %s\n%s", name, version, e, e.output)
                self._append_transparency({"crate": name, "version": version, "patch": patch.name,
                                           "overlay": str(overlay.path), "applied": False})
                raise
            applied.append(patch.name)
            self._append_transparency({"crate": name, "version": version, "patch": patch.name,
                                       "sha256": _sha256_of_file(patch.path),
                                       "overlay": str(overlay.path), "applied": True})
            logger.debug("%s %s: applied %s", name, version, patch.name)
        logger.info("%s %s: applied %d patch(es) from %s", name, version, len(applied), overlay.name)
        return applied
