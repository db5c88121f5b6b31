from __future__ import annotations

import hashlib
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from pushdeploy.config import DeployConfig
from pushdeploy.errors import AuthFailure, PipelineError
from pushdeploy.models import ImageArtifact, PushResult, Workspace
from pushdeploy.registry import RegistrySession

SECRET = "s3cr3t-registry-token"


class FakeCheckout:
    def __init__(self, fail: Optional[PipelineError] = None, resolved: Optional[str] = None) -> None:
        self.fail = fail
        self.resolved = resolved
        self.calls: List[str] = []

    def materialize(self, source: str, commit_ref: str, destination: Path) -> Workspace:
        self.calls.append(commit_ref)
        if self.fail is not None:
            raise self.fail
        destination.mkdir(parents=True)
        (destination / "Dockerfile").write_text(f"FROM scratch\nLABEL commit={commit_ref}\n")
        commit = self.resolved or commit_ref
        return Workspace(path=destination, commit=commit, commit_time=1700000000, source=source)


class FakeBuilder:
    """Digest is a hash of the descriptor, so equal checkouts give equal images."""

    def __init__(self, fail: Optional[Exception] = None) -> None:
        self.fail = fail
        self.calls = 0

    def build(self, workspace: Workspace, spec) -> ImageArtifact:
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        content = (workspace.path / spec.dockerfile).read_bytes()
        return ImageArtifact(digest="sha256:" + hashlib.sha256(content).hexdigest())


class FakeRegistry:
    """In-memory registry: repository -> tag -> digest."""

    def __init__(
        self,
        tmp_path: Path,
        *,
        login_failures: Optional[List[PipelineError]] = None,
        push_failures: Optional[List[PipelineError]] = None,
        valid_secret: str = SECRET,
    ) -> None:
        self.tmp_path = tmp_path
        self.login_failures = list(login_failures or [])
        self.push_failures = list(push_failures or [])
        self.valid_secret = valid_secret
        self.tags: Dict[str, Dict[str, str]] = {}
        self.login_calls = 0
        self.refresh_calls = 0
        self.publish_calls = 0
        self.open_sessions = 0

    @contextmanager
    def authenticate(self, host: str, credential):
        self.login_calls += 1
        if self.login_failures:
            raise self.login_failures.pop(0)
        if credential.secret != self.valid_secret:
            raise AuthFailure("unauthorized: incorrect username or password")
        session = RegistrySession(host=host, username=credential.username, config_dir=self.tmp_path)
        self.open_sessions += 1
        try:
            yield session
        finally:
            self.open_sessions -= 1
            session.active = False

    def refresh(self, session: RegistrySession, credential) -> None:
        self.refresh_calls += 1
        session.active = True

    def publish(self, session: RegistrySession, artifact: ImageArtifact, target) -> PushResult:
        self.publish_calls += 1
        assert session.active
        if self.push_failures:
            raise self.push_failures.pop(0)
        self.tags.setdefault(target.repository, {})[target.tag] = artifact.digest
        return PushResult(reference=target.reference, digest=artifact.digest)


@pytest.fixture
def deploy_config() -> DeployConfig:
    return DeployConfig.from_dict(
        {
            "branch": "main",
            "source": "https://example.com/paritytech/substrate-lite.git",
            "registry": "docker.pkg.github.com",
            "repository": "paritytech/substrate-lite/node",
            "retry": {"max_attempts": 3, "backoff_seconds": 0.5},
        }
    )


@pytest.fixture
def environ() -> Dict[str, str]:
    return {"GITHUB_ACTOR": "octocat", "GITHUB_TOKEN": SECRET}


@pytest.fixture
def fake_checkout() -> FakeCheckout:
    return FakeCheckout()


@pytest.fixture
def fake_builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def fake_registry(tmp_path: Path) -> FakeRegistry:
    return FakeRegistry(tmp_path / "auth")
