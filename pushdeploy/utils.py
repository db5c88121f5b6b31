from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Mapping, Sequence, TypeVar
from urllib.parse import urlsplit

from .errors import PipelineError
from .models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SENSITIVE_FLAGS = {"--password", "-p", "--token"}
_SENSITIVE_KEYS = ("password", "token", "secret", "authorization", "bearer")


class CommandError(RuntimeError):
    """Raised when a subprocess exits with a non-zero status code."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Command {' '.join(redact_command_for_log(command))} failed with exit code {returncode}\n"
            f"STDOUT:{stdout}\nSTDERR:{stderr}"
        )


class CommandTimeout(RuntimeError):
    """Raised when a subprocess exceeds its time budget."""

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        self.command = list(command)
        self.timeout = timeout
        super().__init__(
            f"Command {' '.join(redact_command_for_log(command))} timed out after {timeout:.1f}s"
        )


class ToolNotFound(RuntimeError):
    """Raised when the executable of a command is not on PATH."""


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    timeout: float | None = None,
    input: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process.

    ``input`` is written to the child's stdin and never appears in logs,
    which is how secrets are handed to external tools.
    """

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    logger.debug("running %s", " ".join(redact_command_for_log(command)))
    try:
        result = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=process_env,
            input=input,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ToolNotFound(f"{command[0]} not found. Install it and ensure it is available in PATH.") from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeout(command, float(timeout or 0)) from exc
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stdout, result.stderr)
    return result


def redact_command_for_log(command: Sequence[str]) -> List[str]:
    redacted: List[str] = []
    skip_next = False
    for item in command:
        lower = item.lower()
        if skip_next:
            redacted.append("***")
            skip_next = False
            continue
        if lower in _SENSITIVE_FLAGS:
            redacted.append(item)
            skip_next = True
            continue
        if "=" in item and any(key in lower.split("=", 1)[0] for key in _SENSITIVE_KEYS):
            redacted.append(item.split("=", 1)[0] + "=***")
            continue
        if "://" in item:
            parsed = urlsplit(item)
            if parsed.password:
                safe_netloc = parsed.netloc.replace(parsed.password, "***")
                redacted.append(item.replace(parsed.netloc, safe_netloc))
                continue
        redacted.append(item)
    return redacted


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or fails with a non-retryable error.

    Only errors flagged ``retryable`` are retried, at most
    ``policy.max_attempts`` times in total with exponential backoff.
    """

    attempts = max(int(policy.max_attempts), 1)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except PipelineError as exc:
            if not exc.retryable or attempt >= attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.1fs",
                description,
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


def ensure_directory(path: str | Path) -> Path:
    """Create a directory and return its Path object."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def dump_json(path: str | Path, payload: Mapping[str, object], *, indent: int = 2) -> None:
    """Write structured JSON to disk with a trailing newline for readability."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=indent, sort_keys=True) + "\n")

