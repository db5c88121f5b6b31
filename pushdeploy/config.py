"""Deployment configuration loading."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .models import BuildSpec, Credential, PushEvent, RetryPolicy, Timeouts, sha_tag, tag_for_ref

logger = logging.getLogger(__name__)

_REQUIRED_KEYS = ("branch", "registry", "repository")


@dataclass(frozen=True)
class DeployConfig:
    """Static configuration for one deployment target."""

    branch: str
    registry: str
    repository: str
    source: Optional[str] = None
    build: BuildSpec = field(default_factory=BuildSpec)
    tag_with_ref: bool = True
    tag_with_sha: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeouts: Timeouts = field(default_factory=Timeouts)
    username_env: str = "GITHUB_ACTOR"
    password_env: str = "GITHUB_TOKEN"

    @classmethod
    def from_file(cls, path: str | Path) -> "DeployConfig":
        path = Path(path)
        try:
            raw_text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"cannot read deploy config {path}: {exc}") from exc
        try:
            raw_data = json.loads(raw_text)
        except json.JSONDecodeError:
            try:
                raw_data = yaml.safe_load(raw_text)
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"deploy config {path} is neither JSON nor YAML: {exc}") from exc
        if not isinstance(raw_data, dict):
            raise ConfigurationError(f"deploy config {path} must contain a mapping")
        logger.debug("loaded deploy config from %s", path)
        return cls.from_dict(raw_data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeployConfig":
        missing = [key for key in _REQUIRED_KEYS if not str(data.get(key) or "").strip()]
        if missing:
            raise ConfigurationError(f"deploy config is missing required keys: {', '.join(missing)}")

        tags = _section(data, "tags")
        credentials = _section(data, "credentials")
        try:
            config = cls(
                branch=str(data["branch"]).strip(),
                registry=_normalize_registry(str(data["registry"])),
                repository=str(data["repository"]).strip().strip("/"),
                source=_string_or_none(data.get("source")),
                build=BuildSpec.from_dict(_section(data, "build")),
                tag_with_ref=bool(tags.get("tag_with_ref", True)),
                tag_with_sha=bool(tags.get("tag_with_sha", False)),
                retry=RetryPolicy.from_dict(_section(data, "retry")),
                timeouts=Timeouts.from_dict(_section(data, "timeouts")),
                username_env=str(credentials.get("username_env", "GITHUB_ACTOR")),
                password_env=str(credentials.get("password_env", "GITHUB_TOKEN")),
            )
        except (TypeError, ValueError, AttributeError) as exc:
            raise ConfigurationError(f"invalid deploy config: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if not self.tag_with_ref and not self.tag_with_sha:
            raise ConfigurationError("at least one of tags.tag_with_ref and tags.tag_with_sha must be enabled")
        if self.retry.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be at least 1")
        if self.retry.backoff_seconds < 0 or self.retry.max_backoff_seconds < 0:
            raise ConfigurationError("retry backoff values must not be negative")
        for name in ("checkout_s", "build_s", "network_s"):
            if getattr(self.timeouts, name) <= 0:
                raise ConfigurationError(f"timeouts.{name} must be positive")
        if self.repository != self.repository.lower():
            raise ConfigurationError(f"repository '{self.repository}' must be lowercase")

    def resolve_source(self, environ: Mapping[str, str] | None = None) -> str:
        """Return the clone URL, falling back to the GitHub Actions environment."""

        if self.source:
            return self.source
        environ = os.environ if environ is None else environ
        server = environ.get("GITHUB_SERVER_URL", "https://github.com").rstrip("/")
        repository = environ.get("GITHUB_REPOSITORY", "").strip()
        if not repository:
            raise ConfigurationError("no 'source' configured and GITHUB_REPOSITORY is not set")
        return f"{server}/{repository}.git"

    def credential(self, environ: Mapping[str, str] | None = None) -> Credential:
        environ = os.environ if environ is None else environ
        username = (environ.get(self.username_env) or "").strip()
        secret = environ.get(self.password_env) or ""
        if not username or not secret:
            raise ConfigurationError(
                f"registry credentials are not available; set {self.username_env} and {self.password_env}"
            )
        return Credential(username=username, secret=secret)

    def ref_tags(self, event: PushEvent) -> List[str]:
        """Tags that depend only on the pushed ref, so they can be checked up front."""

        return [tag_for_ref(event.commit_ref)] if self.tag_with_ref else []

    def tags_for(self, event: PushEvent, commit: Optional[str] = None) -> List[str]:
        """Every tag to publish, in push order.

        The sha tag is built from ``commit``, the SHA the checkout resolved,
        and is left out while that is unknown. The ref tag comes last so it
        only moves after the other tags are in place.
        """

        tags: List[str] = []
        if self.tag_with_sha and commit:
            tags.append(sha_tag(commit))
        for tag in self.ref_tags(event):
            if tag not in tags:
                tags.append(tag)
        return tags

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "registry": self.registry,
            "repository": self.repository,
            "source": self.source,
            "dockerfile": self.build.dockerfile,
            "context": self.build.context,
            "tag_with_ref": self.tag_with_ref,
            "tag_with_sha": self.tag_with_sha,
        }


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"deploy config section '{key}' must be a mapping")
    return value


def _string_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    data = str(value).strip()
    return data if data else None


def _normalize_registry(value: str) -> str:
    registry = value.strip().rstrip("/")
    if registry.startswith(("http://", "https://")):
        raise ConfigurationError("registry must be a host name such as 'ghcr.io', not a URL")
    if "/" in registry:
        raise ConfigurationError(f"registry '{registry}' must not contain a path; put it in 'repository'")
    return registry.lower()
