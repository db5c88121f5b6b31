"""Registry authentication and image publishing through the docker CLI.

Every session gets a private docker config directory. The secret is handed to
``docker login`` on stdin and the directory is removed when the session
closes, so credentials never outlive a pipeline run.

Tag updates are last-writer-wins: two runs pushing the same tag race and the
registry keeps whichever manifest arrives last. The registry swaps the tag
pointer atomically, so no in-process locking is attempted here.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import AuthFailure, ConfigurationError, HardFailure, PermissionFailure, PipelineError, TransientError
from .models import Credential, ImageArtifact, PublishTarget, PushResult
from .utils import CommandError, CommandTimeout, ToolNotFound, run_command

logger = logging.getLogger(__name__)

_PUSH_DIGEST_RE = re.compile(r"digest:\s*(sha256:[a-f0-9]{64})")
_DIGEST_RE = re.compile(r"sha256:[a-f0-9]{64}")

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "no such host",
    "temporary failure",
    "network is unreachable",
    "unexpected eof",
    "toomanyrequests",
    "service unavailable",
    "bad gateway",
)
_AUTH_MARKERS = (
    "unauthorized",
    "authentication required",
    "incorrect username or password",
    "invalid username/password",
    "bad credentials",
)
_PERMISSION_MARKERS = (
    "denied",
    "forbidden",
    "insufficient_scope",
    "quota",
)
_HTTP_STATUS_RE = re.compile(r"\b(401|403|429|502|503|504)\b")
_STATUS_MARKERS = {
    "401": "unauthorized",
    "403": "forbidden",
    "429": "toomanyrequests",
    "502": "bad gateway",
    "503": "service unavailable",
    "504": "timeout",
}


@dataclass
class RegistrySession:
    """Authenticated handle for registry writes."""

    host: str
    username: str
    config_dir: Path
    active: bool = True


def classify_registry_error(diagnostic: str, *, during: str) -> type[PipelineError]:
    """Map docker's diagnostic output to an error class.

    ``during`` is ``"login"`` or ``"push"``. Some registries answer a bad
    login with ``denied``, so permission markers count as auth failures
    while logging in.
    """

    text = diagnostic.lower()
    for status in _HTTP_STATUS_RE.findall(text):
        text = f"{text} {_STATUS_MARKERS[status]}"
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return TransientError
    if any(marker in text for marker in _AUTH_MARKERS):
        return AuthFailure
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return AuthFailure if during == "login" else PermissionFailure
    return AuthFailure if during == "login" else HardFailure


class DockerRegistry:
    def __init__(self, *, timeout: float = 300.0, docker: str = "docker") -> None:
        self.timeout = timeout
        self.docker = docker

    @contextmanager
    def authenticate(self, host: str, credential: Credential) -> Iterator[RegistrySession]:
        config_dir = Path(tempfile.mkdtemp(prefix="pushdeploy-auth-"))
        session = RegistrySession(host=host, username=credential.username, config_dir=config_dir)
        try:
            self.login(session, credential)
            yield session
        finally:
            self.close(session)

    def login(self, session: RegistrySession, credential: Credential) -> None:
        logger.info("logging in to %s as %s", session.host, credential.username)
        command = [
            self.docker,
            "--config",
            str(session.config_dir),
            "login",
            "--username",
            credential.username,
            "--password-stdin",
            session.host,
        ]
        self._run(command, during="login", input=credential.secret)
        session.active = True

    def refresh(self, session: RegistrySession, credential: Credential) -> None:
        """Log in again inside an existing session after the registry rejected it."""

        if not session.config_dir.exists():
            raise AuthFailure("registry session was already closed")
        self.login(session, credential)

    def publish(self, session: RegistrySession, artifact: ImageArtifact, target: PublishTarget) -> PushResult:
        if not session.active:
            raise AuthFailure("registry session is closed")
        if target.registry_host != session.host:
            raise ConfigurationError(
                f"session for {session.host} cannot publish to {target.registry_host}"
            )
        reference = target.reference
        self._run([self.docker, "tag", artifact.digest, reference], during="tag")
        logger.info("pushing %s", reference)
        result = self._run(
            [self.docker, "--config", str(session.config_dir), "push", reference],
            during="push",
        )
        digest = _extract_push_digest(f"{result.stdout}\n{result.stderr}")
        logger.info("pushed %s (%s)", reference, digest or "digest unknown")
        return PushResult(reference=reference, digest=digest)

    def close(self, session: RegistrySession) -> None:
        if session.config_dir.exists():
            command = [self.docker, "--config", str(session.config_dir), "logout", session.host]
            try:
                result = run_command(command, check=False, timeout=self.timeout)
                if result.returncode != 0:
                    logger.warning("docker logout from %s failed: %s", session.host, result.stderr.strip())
            except (ToolNotFound, CommandTimeout) as exc:
                logger.warning("docker logout from %s failed: %s", session.host, exc)
            shutil.rmtree(session.config_dir, ignore_errors=True)
        session.active = False

    def _run(
        self,
        command: List[str],
        *,
        during: str,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return run_command(command, timeout=self.timeout, input=input)
        except CommandTimeout as exc:
            raise HardFailure(f"docker {during} timed out after {exc.timeout:.0f}s") from exc
        except ToolNotFound as exc:
            raise ConfigurationError(str(exc)) from exc
        except CommandError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            if during == "tag":
                raise HardFailure(f"docker tag failed (exit={exc.returncode}): {detail}") from exc
            error_cls = classify_registry_error(detail, during=during)
            raise error_cls(f"docker {during} failed (exit={exc.returncode}): {detail}") from exc


def _extract_push_digest(text: str) -> Optional[str]:
    match = _PUSH_DIGEST_RE.search(text)
    if match:
        return match.group(1)
    match = _DIGEST_RE.search(text)
    return match.group(0) if match else None
