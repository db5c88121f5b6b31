from __future__ import annotations

import json
from pathlib import Path

import pytest

import pushdeploy.run as run_mod
from conftest import SECRET, FakeBuilder, FakeCheckout, FakeRegistry
from pushdeploy.pipeline import DeployPipeline

CONFIG = """
branch: main
source: https://example.com/paritytech/substrate-lite.git
registry: docker.pkg.github.com
repository: paritytech/substrate-lite/node
"""


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "deploy.yaml"
    path.write_text(CONFIG)
    return path


def _install_fakes(monkeypatch: pytest.MonkeyPatch, registry: FakeRegistry, environ: dict) -> None:
    def _factory(config, **kwargs):
        return DeployPipeline(
            config,
            checkout=FakeCheckout(),
            builder=FakeBuilder(),
            registry=registry,
            environ=environ,
            sleep=lambda _: None,
            **kwargs,
        )

    monkeypatch.setattr(run_mod, "DeployPipeline", _factory)


def test_check_reports_references(config_path: Path, capsys) -> None:
    code = run_mod.main(["--config", str(config_path), "check", "--branch", "main", "--commit-ref", "abc123"])
    report = json.loads(capsys.readouterr().out)
    assert code == 0
    assert report["qualifies"] is True
    assert report["references"] == ["docker.pkg.github.com/paritytech/substrate-lite/node:abc123"]


def test_check_lists_sha_tag_only_for_commit_pushes(tmp_path: Path, capsys) -> None:
    path = tmp_path / "deploy.yaml"
    path.write_text(CONFIG + "tags: {tag_with_ref: true, tag_with_sha: true}\n")
    base = "docker.pkg.github.com/paritytech/substrate-lite/node"

    run_mod.main(["--config", str(path), "check", "--branch", "main", "--commit-ref", "0123456789abcdef"])
    assert json.loads(capsys.readouterr().out)["references"] == [f"{base}:sha-0123456", f"{base}:0123456789abcdef"]

    run_mod.main(["--config", str(path), "check", "--branch", "main", "--commit-ref", "refs/heads/main"])
    assert json.loads(capsys.readouterr().out)["references"] == [f"{base}:main"]


def test_check_other_branch(config_path: Path, capsys) -> None:
    code = run_mod.main(["--config", str(config_path), "check", "--branch", "feature-x", "--commit-ref", "def456"])
    report = json.loads(capsys.readouterr().out)
    assert code == 0
    assert report["qualifies"] is False
    assert report["references"] == []


def test_run_from_event_file_writes_summary(monkeypatch, config_path: Path, tmp_path: Path, capsys) -> None:
    registry = FakeRegistry(tmp_path / "auth")
    _install_fakes(monkeypatch, registry, {"GITHUB_ACTOR": "octocat", "GITHUB_TOKEN": SECRET})
    event_path = tmp_path / "event.json"
    event_path.write_text(json.dumps({"ref": "refs/heads/main", "after": "abc123", "pusher": {"name": "octocat"}}))
    summary_path = tmp_path / "out" / "summary.json"

    code = run_mod.main(
        [
            "--config",
            str(config_path),
            "--workspace",
            str(tmp_path / "work"),
            "run",
            "--event",
            str(event_path),
            "--summary",
            str(summary_path),
        ]
    )

    assert code == 0
    summary = json.loads(summary_path.read_text())
    assert summary["state"] == "succeeded"
    assert summary["published"][0]["reference"].endswith("/node:abc123")
    assert "abc123" in registry.tags["paritytech/substrate-lite/node"]
    assert SECRET not in capsys.readouterr().out


def test_run_skips_other_branches(monkeypatch, config_path: Path, tmp_path: Path, capsys) -> None:
    registry = FakeRegistry(tmp_path / "auth")
    _install_fakes(monkeypatch, registry, {"GITHUB_ACTOR": "octocat", "GITHUB_TOKEN": SECRET})

    code = run_mod.main(
        ["--config", str(config_path), "--workspace", str(tmp_path / "work"), "run", "--branch", "dev", "--commit-ref", "x1"]
    )

    assert code == 0
    assert json.loads(capsys.readouterr().out)["state"] == "idle"
    assert registry.login_calls == 0


def test_run_reports_failing_stage(monkeypatch, config_path: Path, tmp_path: Path, capsys) -> None:
    registry = FakeRegistry(tmp_path / "auth")
    _install_fakes(monkeypatch, registry, {"GITHUB_ACTOR": "octocat", "GITHUB_TOKEN": "expired"})

    code = run_mod.main(
        ["--config", str(config_path), "--workspace", str(tmp_path / "work"), "run", "--branch", "main", "--commit-ref", "abc123"]
    )

    captured = capsys.readouterr()
    assert code == 1
    assert json.loads(captured.out)["state"] == "failed"
    assert "[pushdeploy:authenticate] failed: unauthorized" in captured.err


def test_missing_config_fails_cleanly(tmp_path: Path, capsys) -> None:
    code = run_mod.main(["--config", str(tmp_path / "nope.yaml"), "check", "--branch", "main", "--commit-ref", "abc123"])
    assert code == 1
    assert "[pushdeploy:check] failed: cannot read deploy config" in capsys.readouterr().err


def test_branch_requires_commit_ref(config_path: Path, capsys) -> None:
    code = run_mod.main(["--config", str(config_path), "check", "--branch", "main"])
    assert code == 1
    assert "--branch and --commit-ref must be given together" in capsys.readouterr().err
