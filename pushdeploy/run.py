from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .config import DeployConfig
from .errors import ConfigurationError, PipelineError
from .models import PushEvent, is_commit_sha
from .pipeline import DeployPipeline, qualifies
from .utils import dump_json

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _load_event(args: argparse.Namespace) -> PushEvent:
    if args.branch or args.commit_ref:
        if not (args.branch and args.commit_ref):
            raise ConfigurationError("--branch and --commit-ref must be given together")
        return PushEvent(branch=args.branch, commit_ref=args.commit_ref, actor=args.actor or "")

    event_path = args.event or os.environ.get("GITHUB_EVENT_PATH")
    if event_path:
        try:
            payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"cannot read push event {event_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigurationError(f"push event {event_path} must contain a JSON object")
        return PushEvent.from_github_event(payload)

    return PushEvent.from_environment(os.environ)


def cmd_check(args: argparse.Namespace) -> int:
    config = DeployConfig.from_file(args.config)
    event = _load_event(args)
    matched = qualifies(event, config.branch)
    # Nothing is checked out here; a sha tag is only known when the push names a commit.
    commit = event.commit_ref if is_commit_sha(event.commit_ref) else None
    report = {
        "event": event.to_dict(),
        "qualifies": matched,
        "references": [
            f"{config.registry}/{config.repository}:{tag}" for tag in config.tags_for(event, commit)
        ]
        if matched
        else [],
    }
    print(json.dumps(report, indent=2))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    config = DeployConfig.from_file(args.config)
    event = _load_event(args)
    pipeline = DeployPipeline(
        config,
        workspace_root=Path(args.workspace),
        keep_workspace=args.keep_workspace,
    )
    result = pipeline.run(event)
    summary = result.to_dict()
    if args.summary:
        dump_json(args.summary, summary)
    print(json.dumps(summary, indent=2))
    if result.error is not None:
        print(f"[pushdeploy:{result.failed_stage}] failed: {result.error}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build and push a container image for qualifying pushes")
    parser.add_argument(
        "--config",
        default="deploy.yaml",
        help="Path to the deployment config file (JSON or YAML).",
    )
    parser.add_argument(
        "--workspace",
        default=".pushdeploy",
        help="Directory used for per-run checkouts.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for command, func, help_text in (
        ("check", cmd_check, "Show whether a push qualifies and which references it would publish"),
        ("run", cmd_run, "Run the deployment pipeline for a push"),
    ):
        command_parser = subparsers.add_parser(command, help=help_text)
        command_parser.add_argument("--event", help="Push event JSON payload (defaults to $GITHUB_EVENT_PATH)")
        command_parser.add_argument("--branch", help="Branch that was pushed")
        command_parser.add_argument("--commit-ref", help="Commit or ref that was pushed")
        command_parser.add_argument("--actor", help="Who pushed")
        command_parser.set_defaults(func=func)

    run_parser = subparsers.choices["run"]
    run_parser.add_argument("--keep-workspace", action="store_true", help="Do not delete the checkout")
    run_parser.add_argument("--summary", help="Also write the run summary JSON to this path")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=_LOG_FORMAT)
    try:
        return args.func(args)
    except PipelineError as exc:
        print(f"[pushdeploy:{exc.stage or args.command}] failed: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.debug("unexpected error while running %s", args.command, exc_info=True)
        print(f"[pushdeploy:{args.command}] unexpected failure: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
