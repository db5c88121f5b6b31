from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .builder import DockerBuilder
from .checkout import GitCheckout
from .config import DeployConfig
from .errors import AuthFailure, HardFailure, PipelineError
from .models import Credential, ImageArtifact, PublishTarget, PushEvent, PushResult, StageResult, Workspace
from .registry import DockerRegistry, RegistrySession
from .utils import ensure_directory, retry_call

logger = logging.getLogger(__name__)


class Stage(Enum):
    CHECKOUT = auto()
    BUILD = auto()
    AUTHENTICATE = auto()
    PUBLISH = auto()

    @classmethod
    def ordered(cls) -> Iterable["Stage"]:
        return (
            cls.CHECKOUT,
            cls.BUILD,
            cls.AUTHENTICATE,
            cls.PUBLISH,
        )


class PipelineState(Enum):
    IDLE = "idle"
    FILTERING = "filtering"
    CHECKING_OUT = "checking_out"
    BUILDING = "building"
    AUTHENTICATING = "authenticating"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_STAGE_STATES: Dict[Stage, PipelineState] = {
    Stage.CHECKOUT: PipelineState.CHECKING_OUT,
    Stage.BUILD: PipelineState.BUILDING,
    Stage.AUTHENTICATE: PipelineState.AUTHENTICATING,
    Stage.PUBLISH: PipelineState.PUBLISHING,
}


def qualifies(event: PushEvent, branch: str) -> bool:
    """Return True when a push should trigger a deployment (exact branch match)."""

    return event.branch == branch


@dataclass
class PipelineContext:
    """Per-run state handed from stage to stage."""

    config: DeployConfig
    event: PushEvent
    run_dir: Path
    checkout: Any
    builder: Any
    registry: Any
    environ: Mapping[str, str] = field(default_factory=dict)
    sleep: Callable[[float], None] = time.sleep
    resources: ExitStack = field(default_factory=ExitStack)
    workspace: Optional[Workspace] = None
    artifact: Optional[ImageArtifact] = None
    credential: Optional[Credential] = None
    session: Optional[RegistrySession] = None
    published: List[PushResult] = field(default_factory=list)

    @property
    def checkout_path(self) -> Path:
        return self.run_dir / "src"


@dataclass
class PipelineRun:
    """Outcome of one pipeline instance."""

    event: PushEvent
    state: PipelineState = PipelineState.IDLE
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    results: List[StageResult] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[PipelineError] = None
    image: Optional[ImageArtifact] = None
    published: List[PushResult] = field(default_factory=list)

    def transition(self, state: PipelineState) -> None:
        logger.debug("pipeline state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    @property
    def skipped(self) -> bool:
        return self.state is PipelineState.IDLE

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "event": self.event.to_dict(),
            "state": self.state.value,
            "stages": [result.to_dict() for result in self.results],
            "published": [
                {"reference": result.reference, "digest": result.digest} for result in self.published
            ],
        }
        if self.image is not None:
            payload["image"] = {"digest": self.image.digest, "tags": sorted(self.image.tags)}
        if self.error is not None:
            payload["failed_stage"] = self.failed_stage
            payload["error"] = {"type": type(self.error).__name__, "message": str(self.error)}
        return payload


StageHandler = Callable[[PipelineContext], StageResult]


def _stage_checkout(context: PipelineContext) -> StageResult:
    # An unusable ref can never publish; reject it before fetching anything.
    context.config.ref_tags(context.event)
    source = context.config.resolve_source(context.environ)
    workspace = context.checkout.materialize(source, context.event.commit_ref, context.checkout_path)
    context.workspace = workspace
    return StageResult(
        "checkout",
        "completed",
        {"commit": workspace.commit, "path": str(workspace.path)},
    )


def _stage_build(context: PipelineContext) -> StageResult:
    assert context.workspace is not None
    build_start = time.perf_counter()
    artifact = context.builder.build(context.workspace, context.config.build)
    context.artifact = artifact
    return StageResult(
        "build",
        "completed",
        {
            "digest": artifact.digest,
            "dockerfile": context.config.build.dockerfile,
            "context": context.config.build.context,
            "duration_s": round(time.perf_counter() - build_start, 3),
        },
    )


def _stage_authenticate(context: PipelineContext) -> StageResult:
    credential = context.config.credential(context.environ)
    host = context.config.registry
    context.credential = credential
    context.session = retry_call(
        lambda: context.resources.enter_context(context.registry.authenticate(host, credential)),
        context.config.retry,
        description=f"login to {host}",
        sleep=context.sleep,
    )
    return StageResult("authenticate", "completed", {"registry": host, "username": credential.username})


def _push_once(context: PipelineContext, target: PublishTarget) -> PushResult:
    policy = context.config.retry

    def _attempt() -> PushResult:
        return context.registry.publish(context.session, context.artifact, target)

    try:
        return retry_call(_attempt, policy, description=f"push {target.reference}", sleep=context.sleep)
    except AuthFailure as exc:
        # Session expired mid-upload: authenticate again, then restart the upload.
        logger.warning("registry rejected the session while pushing %s: %s", target.reference, exc)
        retry_call(
            lambda: context.registry.refresh(context.session, context.credential),
            policy,
            description=f"login to {target.registry_host}",
            sleep=context.sleep,
        )
        return retry_call(_attempt, policy, description=f"push {target.reference}", sleep=context.sleep)


def _stage_publish(context: PipelineContext) -> StageResult:
    """Push every tag in order, stopping at the first failure.

    Tags pushed before a failure stay moved on the registry. The ref tag is
    pushed last, so a failed run never moves it.
    """

    assert context.workspace is not None
    assert context.artifact is not None and context.session is not None
    config = context.config
    targets = [
        PublishTarget(registry_host=config.registry, repository=config.repository, tag=tag)
        for tag in config.tags_for(context.event, context.workspace.commit)
    ]
    for target in targets:
        result = _push_once(context, target)
        context.published.append(result)
        context.artifact = context.artifact.with_tag(target.tag)
    return StageResult(
        "publish",
        "completed",
        {
            "references": [result.reference for result in context.published],
            "digest": next((result.digest for result in context.published if result.digest), None),
        },
    )


_STAGE_HANDLERS: Dict[Stage, StageHandler] = {
    Stage.CHECKOUT: _stage_checkout,
    Stage.BUILD: _stage_build,
    Stage.AUTHENTICATE: _stage_authenticate,
    Stage.PUBLISH: _stage_publish,
}


class DeployPipeline:
    """Runs checkout, build, authenticate and publish for qualifying pushes.

    Each call to :meth:`run` is an independent pipeline instance with its
    own workspace directory; nothing is shared between runs except the
    registry's tag namespace.
    """

    def __init__(
        self,
        config: DeployConfig,
        *,
        workspace_root: str | Path,
        checkout: Any = None,
        builder: Any = None,
        registry: Any = None,
        environ: Mapping[str, str] | None = None,
        keep_workspace: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.workspace_root = Path(workspace_root)
        self.checkout = checkout or GitCheckout(timeout=config.timeouts.checkout_s)
        self.builder = builder or DockerBuilder(timeout=config.timeouts.build_s)
        self.registry = registry or DockerRegistry(timeout=config.timeouts.network_s)
        self.environ = os.environ if environ is None else environ
        self.keep_workspace = keep_workspace
        self.sleep = sleep

    def run(self, event: PushEvent) -> PipelineRun:
        run = PipelineRun(event=event)
        run.transition(PipelineState.FILTERING)
        if not qualifies(event, self.config.branch):
            logger.info(
                "ignoring push to '%s'; deployments only run for '%s'",
                event.branch,
                self.config.branch,
            )
            run.transition(PipelineState.IDLE)
            return run

        logger.info("deploying %s (branch %s, pushed by %s)", event.commit_ref, event.branch, event.actor or "unknown")
        run_dir = Path(tempfile.mkdtemp(prefix="run-", dir=ensure_directory(self.workspace_root)))
        context = PipelineContext(
            config=self.config,
            event=event,
            run_dir=run_dir,
            checkout=self.checkout,
            builder=self.builder,
            registry=self.registry,
            environ=self.environ,
            sleep=self.sleep,
        )
        try:
            with context.resources:
                self._run_stages(run, context)
        finally:
            context.credential = None
            context.session = None
            if self.keep_workspace:
                logger.info("keeping workspace %s", run_dir)
            else:
                shutil.rmtree(run_dir, ignore_errors=True)
        return run

    def _run_stages(self, run: PipelineRun, context: PipelineContext) -> None:
        for stage in Stage.ordered():
            name = stage.name.lower()
            run.transition(_STAGE_STATES[stage])
            try:
                result = _STAGE_HANDLERS[stage](context)
            except PipelineError as exc:
                if exc.stage is None:
                    exc.stage = name
                logger.error("stage %s failed: %s", name, exc)
                self._record_failure(run, context, name, exc)
                return
            except Exception as exc:
                logger.error("stage %s failed unexpectedly", name, exc_info=True)
                failure = HardFailure(f"{type(exc).__name__}: {exc}", stage=name)
                failure.__cause__ = exc
                self._record_failure(run, context, name, failure)
                return
            logger.info("stage %s completed", name)
            run.results.append(result)
        run.image = context.artifact
        run.published = list(context.published)
        run.transition(PipelineState.SUCCEEDED)

    @staticmethod
    def _record_failure(run: PipelineRun, context: PipelineContext, name: str, exc: PipelineError) -> None:
        run.results.append(StageResult(name, "failed", {"error": type(exc).__name__, "message": str(exc)}))
        run.failed_stage = name
        run.error = exc
        run.image = context.artifact
        run.published = list(context.published)
        run.transition(PipelineState.FAILED)
