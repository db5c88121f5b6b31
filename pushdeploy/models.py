from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .errors import ConfigurationError

_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_PULL_REF_RE = re.compile(r"^refs/pull/(?P<number>[^/]+)(?:/.*)?$")
_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{7,64}$")


def tag_for_ref(ref: str) -> str:
    """Derive the image tag for a git reference (the tag-with-ref policy).

    ``refs/heads/<branch>`` and ``refs/tags/<tag>`` lose their prefix, pull
    request refs become ``pr-<number>`` and anything else is kept verbatim.
    Forward slashes are replaced with ``-``.
    """

    value = ref.strip()
    pull = _PULL_REF_RE.match(value)
    if pull:
        tag = f"pr-{pull.group('number')}"
    elif value.startswith("refs/heads/"):
        tag = value[len("refs/heads/") :]
    elif value.startswith("refs/tags/"):
        tag = value[len("refs/tags/") :]
    else:
        tag = value
    tag = tag.replace("/", "-")
    validate_tag(tag)
    return tag


def is_commit_sha(value: str) -> bool:
    return bool(_COMMIT_RE.match(value.strip()))


def sha_tag(commit: str) -> str:
    """``sha-<first 7 hex digits>`` of a resolved commit."""

    if not is_commit_sha(commit):
        raise ConfigurationError(f"'{commit}' is not a commit SHA")
    return f"sha-{commit.strip()[:7].lower()}"


def validate_tag(tag: str) -> None:
    if not _TAG_RE.match(tag):
        raise ConfigurationError(f"'{tag}' is not a valid image tag")


def branch_from_ref(ref: str) -> str:
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/") :]
    if ref.startswith("refs/"):
        return ""
    return ref


@dataclass(frozen=True)
class PushEvent:
    """A repository push as reported by the hosting platform."""

    branch: str
    commit_ref: str
    actor: str = ""

    @classmethod
    def from_github_event(cls, payload: Mapping[str, Any]) -> "PushEvent":
        ref = payload.get("ref")
        if not isinstance(ref, str) or not ref:
            raise ConfigurationError("push event payload has no 'ref'")
        head_commit = payload.get("head_commit") or {}
        commit = payload.get("after") or (head_commit.get("id") if isinstance(head_commit, dict) else None)
        if not isinstance(commit, str) or not commit:
            raise ConfigurationError("push event payload has no commit ('after' or 'head_commit.id')")
        pusher = payload.get("pusher") or {}
        sender = payload.get("sender") or {}
        actor = pusher.get("name") or sender.get("login") or ""
        return cls(branch=branch_from_ref(ref), commit_ref=commit, actor=str(actor))

    @classmethod
    def from_environment(cls, environ: Mapping[str, str]) -> "PushEvent":
        ref = environ.get("GITHUB_REF", "")
        commit = environ.get("GITHUB_SHA", "")
        if not ref or not commit:
            raise ConfigurationError("GITHUB_REF and GITHUB_SHA must be set to derive a push event")
        return cls(branch=branch_from_ref(ref), commit_ref=commit, actor=environ.get("GITHUB_ACTOR", ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"branch": self.branch, "commit_ref": self.commit_ref, "actor": self.actor}


@dataclass(frozen=True)
class Credential:
    """Registry identity and secret. The secret is kept out of repr()."""

    username: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class BuildSpec:
    """Where the build descriptor lives in the workspace and how to build it."""

    context: str = "."
    dockerfile: str = "Dockerfile"
    build_args: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    target: Optional[str] = None
    always_pull: bool = False
    add_git_labels: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BuildSpec":
        return cls(
            context=str(data.get("path", data.get("context", "."))),
            dockerfile=str(data.get("dockerfile", "Dockerfile")),
            build_args={str(k): str(v) for k, v in (data.get("build_args") or {}).items()},
            labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
            target=data.get("target"),
            always_pull=bool(data.get("always_pull", False)),
            add_git_labels=bool(data.get("add_git_labels", False)),
        )


@dataclass(frozen=True)
class Workspace:
    """A fully materialized checkout of one commit."""

    path: Path
    commit: str
    commit_time: Optional[int] = None
    source: str = ""


@dataclass(frozen=True)
class ImageArtifact:
    digest: str
    tags: FrozenSet[str] = frozenset()

    def with_tag(self, tag: str) -> "ImageArtifact":
        return ImageArtifact(digest=self.digest, tags=self.tags | {tag})


@dataclass(frozen=True)
class PublishTarget:
    registry_host: str
    repository: str
    tag: str

    @property
    def reference(self) -> str:
        return f"{self.registry_host}/{self.repository}:{self.tag}"


@dataclass(frozen=True)
class PushResult:
    reference: str
    digest: Optional[str]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient failures."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        delay = max(float(self.backoff_seconds), 0.0) * (2 ** max(attempt - 1, 0))
        return min(delay, max(float(self.max_backoff_seconds), 0.0))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_seconds=float(data.get("backoff_seconds", 1.0)),
            max_backoff_seconds=float(data.get("max_backoff_seconds", 30.0)),
        )


@dataclass(frozen=True)
class Timeouts:
    """Upper bounds, in seconds, for each kind of external call."""

    checkout_s: float = 600.0
    build_s: float = 3600.0
    network_s: float = 300.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Timeouts":
        return cls(
            checkout_s=float(data.get("checkout_s", 600.0)),
            build_s=float(data.get("build_s", 3600.0)),
            network_s=float(data.get("network_s", 300.0)),
        )


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: str
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.name, "status": self.status, "details": self.details}
