# cratepack/process.py
# -*- coding: utf-8 -*-
"""Blocking child-process execution with timeout and captured logs."""

from __future__ import annotations
import os
import time
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from cratepack.logging import get_logger

logger = get_logger("process")

TIMEOUT_RC = 124
NOT_FOUND_RC = 127


@dataclass
class CommandResult:
    cmd: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration: float = 0.0
    log_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 20) -> str:
        text = (self.stdout + ("\n" if self.stdout and self.stderr else "") + self.stderr).rstrip()
        return "\n".join(text.splitlines()[-lines:])


def run_command(cmd: Sequence[str], cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None,
                timeout: Optional[int] = None, log_path: Optional[Path] = None) -> CommandResult:
    """Run cmd to completion. Returns a CommandResult; rc 124 on timeout, 127 if not found.

    env is merged over the current environment. When log_path is given the
    combined output is also written there.
    """
    cmd = [str(c) for c in cmd]
    full_env = dict(os.environ)
    if env:
        full_env.update({k: str(v) for k, v in env.items()})
    logger.debug("RUN: %s (cwd=%s)", shlex.join(cmd), str(cwd) if cwd else None)
    start = time.time()
    timed_out = False
    try:
        p = subprocess.Popen(cmd, cwd=str(cwd) if cwd else None, stdout=subprocess.PIPE,
                             stderr=subprocess.PIPE, env=full_env, text=True)
    except FileNotFoundError as e:
        return CommandResult(cmd, NOT_FOUND_RC, "", str(e), duration=time.time() - start)
    try:
        out, err = p.communicate(timeout=timeout)
        rc = p.returncode
    except subprocess.TimeoutExpired:
        p.kill()
        out, err = p.communicate()
        rc, timed_out = TIMEOUT_RC, True
        logger.error("command timed out after %ss: %s", timeout, shlex.join(cmd))
    except KeyboardInterrupt:
        p.kill()
        p.communicate()
        raise
    result = CommandResult(cmd, rc, out or "", err or "", timed_out, time.time() - start)
    if log_path is not None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as fh:
            fh.write(f"$ {shlex.join(cmd)}\n")
            fh.write(result.stdout)
            fh.write(result.stderr)
            fh.write(f"[exit {rc}]\n")
        result.log_path = log_path
    return result
