"""Materialize the triggering commit into a build workspace."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List

from .errors import HardFailure
from .models import Workspace
from .utils import CommandError, CommandTimeout, ToolNotFound, ensure_directory, redact_command_for_log, run_command

logger = logging.getLogger(__name__)

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_LFS_SKIP_SMUDGE": "1"}


class GitCheckout:
    """Fetches one commit with ``git`` and hands over a complete tree or nothing."""

    def __init__(self, *, timeout: float = 600.0) -> None:
        self.timeout = timeout

    def materialize(self, source: str, commit_ref: str, destination: str | Path) -> Workspace:
        destination = Path(destination)
        if destination.exists():
            raise HardFailure(f"workspace {destination} already exists")
        staging = destination.with_name(destination.name + ".partial")
        shutil.rmtree(staging, ignore_errors=True)
        ensure_directory(staging)
        safe_source = redact_command_for_log([source])[0]
        logger.info("checking out %s at %s", safe_source, commit_ref)
        try:
            self._git(["init", "--quiet"], staging)
            self._git(["remote", "add", "origin", source], staging)
            self._fetch(commit_ref, staging)
            commit = self._git(["rev-parse", "HEAD"], staging).stdout.strip()
            commit_time = int(self._git(["log", "-1", "--format=%ct", "HEAD"], staging).stdout.strip())
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        staging.rename(destination)
        logger.info("checked out commit %s into %s", commit, destination)
        return Workspace(path=destination, commit=commit, commit_time=commit_time, source=safe_source)

    def _fetch(self, commit_ref: str, repo_dir: Path) -> None:
        try:
            self._git(["fetch", "--quiet", "--depth", "1", "origin", commit_ref], repo_dir)
            self._git(["checkout", "--quiet", "--detach", "FETCH_HEAD"], repo_dir)
            return
        except HardFailure as exc:
            if isinstance(exc.__cause__, CommandTimeout):
                raise
            # Servers only serve full object names directly; abbreviated
            # SHAs need the history to be resolved locally.
            logger.debug("shallow fetch of %s failed, fetching full history: %s", commit_ref, exc)
        self._git(["fetch", "--quiet", "--tags", "origin"], repo_dir)
        resolved = self._git(["rev-parse", "--verify", "--quiet", f"{commit_ref}^{{commit}}"], repo_dir)
        self._git(["checkout", "--quiet", "--detach", resolved.stdout.strip()], repo_dir)

    def _git(self, args: List[str], repo_dir: Path) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            return run_command(command, cwd=repo_dir, env=_GIT_ENV, timeout=self.timeout)
        except CommandTimeout as exc:
            raise HardFailure(f"checkout timed out: {exc}") from exc
        except ToolNotFound as exc:
            raise HardFailure(str(exc)) from exc
        except CommandError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            command_text = " ".join(redact_command_for_log(command))
            raise HardFailure(f"'{command_text}' failed (exit={exc.returncode}): {detail}") from exc
