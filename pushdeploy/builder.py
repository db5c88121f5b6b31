"""Container image builds driven through the docker CLI."""

from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Tuple

from .errors import BuildFailure, ConfigurationError, HardFailure
from .models import BuildSpec, ImageArtifact, Workspace
from .utils import CommandError, CommandTimeout, ToolNotFound, run_command

logger = logging.getLogger(__name__)

_IMAGE_ID_RE = re.compile(r"sha256:[a-f0-9]{64}")

REVISION_LABEL = "org.opencontainers.image.revision"
SOURCE_LABEL = "org.opencontainers.image.source"


class DockerBuilder:
    """Builds one image per workspace and identifies it by content digest."""

    def __init__(self, *, timeout: float = 3600.0, docker: str = "docker") -> None:
        self.timeout = timeout
        self.docker = docker

    def locate(self, workspace: Workspace, spec: BuildSpec) -> Tuple[Path, Path]:
        """Resolve the build context and descriptor inside the workspace."""

        root = Path(workspace.path).resolve()
        context_dir = (root / spec.context).resolve()
        if context_dir != root and root not in context_dir.parents:
            raise ConfigurationError(f"build context '{spec.context}' escapes the workspace")
        if not context_dir.is_dir():
            raise ConfigurationError(f"build context '{spec.context}' does not exist at commit {workspace.commit}")
        dockerfile = (context_dir / spec.dockerfile).resolve()
        if root not in dockerfile.parents:
            raise ConfigurationError(f"build descriptor '{spec.dockerfile}' escapes the workspace")
        if not dockerfile.is_file():
            relative = dockerfile.relative_to(root).as_posix()
            raise ConfigurationError(f"build descriptor '{relative}' not found at commit {workspace.commit}")
        return context_dir, dockerfile

    def build(self, workspace: Workspace, spec: BuildSpec) -> ImageArtifact:
        context_dir, dockerfile = self.locate(workspace, spec)
        with tempfile.TemporaryDirectory(prefix="pushdeploy-build-") as tmp:
            iidfile = Path(tmp) / "image.id"
            command = self.build_command(workspace, spec, context_dir, dockerfile, iidfile)
            logger.info("building image from %s", dockerfile.relative_to(Path(workspace.path).resolve()).as_posix())
            try:
                result = run_command(
                    command,
                    cwd=workspace.path,
                    env=self._build_env(workspace),
                    timeout=self.timeout,
                )
            except CommandTimeout as exc:
                raise HardFailure(f"image build timed out after {exc.timeout:.0f}s") from exc
            except ToolNotFound as exc:
                raise ConfigurationError(str(exc)) from exc
            except CommandError as exc:
                raise BuildFailure(
                    f"docker build failed (exit={exc.returncode})",
                    diagnostics=(exc.stderr or exc.stdout or "").strip(),
                ) from exc
            image_id = iidfile.read_text(encoding="utf-8").strip() if iidfile.exists() else ""
        if not _IMAGE_ID_RE.fullmatch(image_id):
            match = _IMAGE_ID_RE.search(f"{result.stdout}\n{result.stderr}")
            if not match:
                raise BuildFailure("docker build did not report an image id")
            image_id = match.group(0)
        logger.info("built image %s", image_id)
        return ImageArtifact(digest=image_id)

    def build_command(
        self,
        workspace: Workspace,
        spec: BuildSpec,
        context_dir: Path,
        dockerfile: Path,
        iidfile: Path,
    ) -> List[str]:
        command = [self.docker, "build", "--file", str(dockerfile), "--iidfile", str(iidfile)]
        if spec.always_pull:
            command.append("--pull")
        if spec.target:
            command.extend(["--target", spec.target])
        for key, value in sorted(spec.build_args.items()):
            command.extend(["--build-arg", f"{key}={value}"])
        for key, value in sorted(_labels_for(workspace, spec).items()):
            command.extend(["--label", f"{key}={value}"])
        command.append(str(context_dir))
        return command

    def _build_env(self, workspace: Workspace) -> Dict[str, str]:
        env = {"DOCKER_BUILDKIT": "1"}
        if workspace.commit_time is not None:
            env["SOURCE_DATE_EPOCH"] = str(workspace.commit_time)
        return env


def _labels_for(workspace: Workspace, spec: BuildSpec) -> Dict[str, str]:
    labels = dict(spec.labels)
    if spec.add_git_labels:
        labels[REVISION_LABEL] = workspace.commit
        if workspace.source:
            labels[SOURCE_LABEL] = workspace.source
    return labels
