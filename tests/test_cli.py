"""Tests for the typer CLI."""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

import provisioner
from provisioner.cli import INDEX_REFRESHED_KEY, app, main
from provisioner.command import CommandResult
from provisioner.identity import Identity
from provisioner.state.models import ResumePoint
from provisioner.state.store import FileStateStore
from provisioner.workflow.runner import (
    EXIT_CONFIGURATION,
    EXIT_STATE_CORRUPTION,
    EXIT_SUCCESS,
    EXIT_UNIT_FAILED,
)

runner = CliRunner()


# ── helpers ──────────────────────────────────────────────────────────────


def _script(path: Path, body: str = "exit 0") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/bash\n{body}\n")


def _fake_bash(failing=()):
    """subprocess.run stand-in: scripts whose name is in *failing* exit 1."""
    calls = []

    def run(cmd, **kwargs):
        calls.append(Path(cmd[1]).name)
        return MagicMock(returncode=1 if Path(cmd[1]).name in failing else 0)

    run.calls = calls
    return run


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Phases A(2 units) and B(3 units), a config repo and a settings file."""
    phases = tmp_path / "phases"
    for name in ("00-a1.sh", "10-a2.sh"):
        _script(phases / "01-alpha" / name)
    for name in ("00-b1.sh", "10-b2.sh", "20-b3.sh"):
        _script(phases / "02-beta" / name)
    repo = tmp_path / "repo"
    repo.mkdir()
    state = tmp_path / "state"
    settings = tmp_path / "provisioner.yaml"
    settings.write_text(
        f"paths:\n  state_dir: {state}\n  config_repo: {repo}\n"
        f"  phases_dir: {phases}\n  log_dir: null\n"
    )
    monkeypatch.setattr(
        "provisioner.cli.resolve_identity",
        lambda: Identity(name="ana", uid=1000, gid=1000, home=str(tmp_path / "home")),
    )
    monkeypatch.delenv("PROVISIONER_RUN_ID", raising=False)
    return {"phases": phases, "repo": repo, "state": state, "settings": settings}


def _run(ws, *args, failing=()):
    fake = _fake_bash(failing)
    with patch("provisioner.workflow.phases.subprocess.run", side_effect=fake):
        result = runner.invoke(app, ["run", "--config", str(ws["settings"]), *args])
    return result, fake.calls


# ── run ──────────────────────────────────────────────────────────────────


class TestRunCommand:
    def test_help(self):
        result = runner.invoke(app, ["run", "--help"])
        assert result.exit_code == 0
        assert "--skip-phases" in result.output

    def test_fresh_run(self, workspace):
        result, calls = _run(workspace)
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert calls == ["00-a1.sh", "10-a2.sh", "00-b1.sh", "10-b2.sh", "20-b3.sh"]
        store = FileStateStore(workspace["state"])
        assert store.check("02-beta/20-b3.sh")

    def test_failure_then_resume(self, workspace):
        result, calls = _run(workspace, failing=("10-a2.sh",))
        assert result.exit_code == EXIT_UNIT_FAILED
        assert "01-alpha/10-a2.sh" in result.output
        assert "provisioner run --phase 01-alpha --force" in result.output
        assert calls == ["00-a1.sh", "10-a2.sh"]

        result, calls = _run(workspace)
        assert result.exit_code == EXIT_SUCCESS
        assert calls == ["10-a2.sh", "00-b1.sh", "10-b2.sh", "20-b3.sh"]

    def test_selective_phase(self, workspace):
        result, calls = _run(workspace, "--phase", "beta")
        assert result.exit_code == EXIT_SUCCESS
        assert calls == ["00-b1.sh", "10-b2.sh", "20-b3.sh"]

    def test_skip_phases(self, workspace):
        result, calls = _run(workspace, "--skip-phases", "01-alpha")
        assert result.exit_code == EXIT_SUCCESS
        assert calls == ["00-b1.sh", "10-b2.sh", "20-b3.sh"]
        assert FileStateStore(workspace["state"]).keys() == [
            "02-beta/00-b1.sh", "02-beta/10-b2.sh", "02-beta/20-b3.sh",
        ]

    def test_unknown_phase(self, workspace):
        result, calls = _run(workspace, "--phase", "gamma")
        assert result.exit_code == EXIT_CONFIGURATION
        assert calls == []
        assert "gamma" in result.output

    def test_force(self, workspace):
        _run(workspace)
        result, calls = _run(workspace, "--force")
        assert result.exit_code == EXIT_SUCCESS
        assert len(calls) == 5

    def test_unit_reselect(self, workspace):
        _run(workspace)
        result, calls = _run(workspace, "--unit", "beta/b2")
        assert result.exit_code == EXIT_SUCCESS
        assert calls == ["10-b2.sh"]

    def test_verbose_and_quiet_conflict(self, workspace):
        result, calls = _run(workspace, "--verbose", "--quiet")
        assert result.exit_code == EXIT_CONFIGURATION
        assert calls == []

    def test_missing_config_repo(self, workspace):
        workspace["repo"].rmdir()
        result, calls = _run(workspace)
        assert result.exit_code == EXIT_CONFIGURATION
        assert "Configuration repository not found" in result.output
        assert calls == []

    def test_dry_run(self, workspace):
        result, calls = _run(workspace, "--dry-run")
        assert result.exit_code == EXIT_SUCCESS
        assert calls == []
        assert "Would run 01-alpha/00-a1.sh" in result.output
        assert not workspace["state"].exists()

    def test_list(self, workspace):
        result, calls = _run(workspace, "--list")
        assert result.exit_code == EXIT_SUCCESS
        assert "02-beta" in result.output
        assert calls == []

    def test_lock_contention(self, workspace):
        from provisioner.state.lock import RunLock

        workspace["state"].mkdir()
        with RunLock(workspace["state"] / "run.lock"):
            result, calls = _run(workspace)
        assert result.exit_code == EXIT_CONFIGURATION
        assert calls == []

    def test_state_corruption(self, workspace):
        completed = workspace["state"] / "completed"
        completed.mkdir(parents=True)
        (completed / "01-alpha~00-a1.sh.json").write_text("garbage")
        result, calls = _run(workspace)
        assert result.exit_code == EXIT_STATE_CORRUPTION
        assert calls == []

    def test_invalid_settings(self, workspace):
        workspace["settings"].write_text("paths:\n  nonsense: 1\n")
        result, _ = _run(workspace)
        assert result.exit_code == EXIT_CONFIGURATION


# ── status / reset / packages ────────────────────────────────────────────


class TestStatusCommand:
    def test_lists_units_and_resume_point(self, workspace):
        store = FileStateStore(workspace["state"])
        store.set("01-alpha/00-a1.sh")
        store.save_resume_point(ResumePoint(phase="02-beta", next_unit="10-b2.sh"))
        result = runner.invoke(app, ["status", "--config", str(workspace["settings"])])
        assert result.exit_code == 0, result.output
        assert "00-a1.sh" in result.output
        assert "completed" in result.output
        assert "pending" in result.output
        assert "Resume point: 02-beta/10-b2.sh" in result.output

    def test_changed_script(self, workspace):
        _run(workspace)
        _script(workspace["phases"] / "01-alpha" / "00-a1.sh", "echo changed")
        result = runner.invoke(app, ["status", "--config", str(workspace["settings"])])
        assert "changed" in result.output


class TestResetCommand:
    def test_reset_key(self, workspace):
        store = FileStateStore(workspace["state"])
        store.set("01-alpha/00-a1.sh")
        result = runner.invoke(
            app, ["reset", "01-alpha/00-a1.sh", "--config", str(workspace["settings"])],
        )
        assert result.exit_code == 0, result.output
        assert not store.check("01-alpha/00-a1.sh")

    def test_reset_phase_short_name(self, workspace):
        store = FileStateStore(workspace["state"])
        store.set("01-alpha/00-a1.sh")
        store.set("01-alpha/10-a2.sh")
        store.set("02-beta/00-b1.sh")
        result = runner.invoke(app, ["reset", "--phase", "alpha", "--config", str(workspace["settings"])])
        assert result.exit_code == 0
        assert store.keys() == ["02-beta/00-b1.sh"]

    def test_reset_all(self, workspace):
        store = FileStateStore(workspace["state"])
        store.set("01-alpha/00-a1.sh")
        store.save_resume_point(ResumePoint(phase="01-alpha"))
        result = runner.invoke(app, ["reset", "--all", "--config", str(workspace["settings"])])
        assert result.exit_code == 0
        assert store.keys() == []
        assert store.load_resume_point() is None

    def test_nothing_to_reset(self, workspace):
        result = runner.invoke(app, ["reset", "--config", str(workspace["settings"])])
        assert result.exit_code == EXIT_CONFIGURATION

    def test_invalid_key(self, workspace):
        result = runner.invoke(app, ["reset", "bad key", "--config", str(workspace["settings"])])
        assert result.exit_code == EXIT_CONFIGURATION


class TestPackagesCommand:
    def test_report(self, workspace):
        result = runner.invoke(app, ["packages", "--state-dir", str(workspace["state"])])
        assert result.exit_code == 0
        assert "No packages recorded" in result.output

    @patch("provisioner.packages.apt.run_command")
    def test_install_helper_dedupes_and_refreshes_once(self, mock_rc, workspace, monkeypatch):
        mock_rc.return_value = CommandResult(command="apt-get", returncode=0, stdout="")
        monkeypatch.setenv("PROVISIONER_RUN_ID", "run-1")
        state = str(workspace["state"])

        r1 = runner.invoke(app, ["packages", "--state-dir", state, "install", "core", "git", "curl"])
        r2 = runner.invoke(app, ["packages", "--state-dir", state, "install", "development", "git", "make"])
        assert r1.exit_code == 0, r1.output
        assert r2.exit_code == 0, r2.output

        commands = [c.args[0] for c in mock_rc.call_args_list]
        installs = [c for c in commands if c[:2] == ["apt-get", "install"]]
        updates = [c for c in commands if c == ["apt-get", "update"]]
        assert installs == [["apt-get", "install", "-y", "git", "curl"], ["apt-get", "install", "-y", "make"]]
        assert len(updates) == 1
        assert FileStateStore(workspace["state"]).get_value(INDEX_REFRESHED_KEY) == "run-1"

        report = runner.invoke(app, ["packages", "--state-dir", state])
        assert "core" in report.output
        assert "development" in report.output

    @patch("provisioner.packages.apt.run_command")
    def test_install_failure_exit_code(self, mock_rc, workspace):
        mock_rc.side_effect = lambda cmd, **kw: CommandResult(
            command=" ".join(cmd), returncode=100 if cmd[1] == "install" else 1,
        )
        result = runner.invoke(
            app, ["packages", "--state-dir", str(workspace["state"]), "install", "core", "nope"],
        )
        assert result.exit_code == EXIT_UNIT_FAILED

    def test_register_helper(self, workspace):
        state = str(workspace["state"])
        result = runner.invoke(app, ["packages", "--state-dir", state, "register", "desktop", "firefox"])
        assert result.exit_code == 0
        report = runner.invoke(app, ["packages", "--state-dir", state])
        assert "firefox" in report.output

    def test_bad_package_name(self, workspace):
        result = runner.invoke(
            app, ["packages", "--state-dir", str(workspace["state"]), "register", "core", "bad;name"],
        )
        assert result.exit_code == EXIT_CONFIGURATION


# ── unit helpers ─────────────────────────────────────────────────────────


class TestStateHelpers:
    def test_check_and_mark(self, workspace, monkeypatch):
        monkeypatch.setenv("PROVISIONER_STATE_DIR", str(workspace["state"]))
        monkeypatch.delenv("PROVISIONER_FORCE", raising=False)
        assert runner.invoke(app, ["state", "check", "zsh/oh-my-zsh"]).exit_code == 1
        assert runner.invoke(app, ["state", "mark", "zsh/oh-my-zsh"]).exit_code == 0
        assert runner.invoke(app, ["state", "check", "zsh/oh-my-zsh"]).exit_code == 0

    def test_check_honours_force_env(self, workspace, monkeypatch):
        monkeypatch.setenv("PROVISIONER_STATE_DIR", str(workspace["state"]))
        runner.invoke(app, ["state", "mark", "zsh/oh-my-zsh"])
        monkeypatch.setenv("PROVISIONER_FORCE", "1")
        assert runner.invoke(app, ["state", "check", "zsh/oh-my-zsh"]).exit_code == 1


class TestConfigHelpers:
    @patch("provisioner.configs.git.run_command")
    def test_capture(self, mock_rc, workspace, tmp_path):
        mock_rc.return_value = CommandResult(command="git", returncode=0)
        live = tmp_path / "home" / ".zshrc"
        live.parent.mkdir()
        live.write_text("x")
        result = runner.invoke(
            app, ["config", "capture", "zsh", str(live), "--repo", str(workspace["repo"])],
        )
        assert result.exit_code == 0, result.output
        assert live.is_symlink()
        assert (workspace["repo"] / "zsh" / ".zshrc").read_text() == "x"
        assert any(c.args[0][3] == "commit" for c in mock_rc.call_args_list)

    def test_missing_repo(self, tmp_path):
        result = runner.invoke(
            app, ["config", "restore", "zsh", str(tmp_path / ".zshrc"), "--repo", str(tmp_path / "nope")],
        )
        assert result.exit_code == EXIT_CONFIGURATION


# ── real units ───────────────────────────────────────────────────────────


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
class TestRealUnits:
    """Units run through bash and call back into the CLI from their own cwd."""

    @pytest.fixture
    def relative_workspace(self, tmp_path, monkeypatch):
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        shim = bin_dir / "provisioner"
        shim.write_text(f'#!/bin/sh\nexec "{sys.executable}" -m provisioner.cli "$@"\n')
        shim.chmod(0o755)
        package_root = Path(provisioner.__file__).resolve().parent.parent
        monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
        monkeypatch.setenv("PYTHONPATH", str(package_root))
        for var in (
            "PROVISIONER_CONFIG", "PROVISIONER_CONFIG_REPO", "PROVISIONER_FORCE",
            "PROVISIONER_RUN_ID", "PROVISIONER_STATE_DIR",
        ):
            monkeypatch.delenv(var, raising=False)

        home = tmp_path / "home"
        home.mkdir()
        (home / ".zshrc").write_text("export EDITOR=vim\n")
        (tmp_path / "repo").mkdir()
        _script(tmp_path / "phases" / "01-base" / "00-plain.sh")
        _script(
            tmp_path / "phases" / "01-base" / "10-helpers.sh",
            "provisioner state check base/extra && exit 0\n"
            'provisioner config sync zsh "$PROVISIONER_USER_HOME/.zshrc" || exit 1\n'
            "provisioner state mark base/extra",
        )
        (tmp_path / "provisioner.yaml").write_text("paths:\n  config_repo: repo\n  log_dir: null\n")
        monkeypatch.setattr(
            "provisioner.cli.resolve_identity",
            lambda: Identity(name="ana", uid=1000, gid=1000, home=str(home)),
        )
        monkeypatch.chdir(tmp_path)
        return tmp_path.resolve()

    def test_helpers_share_ledger_and_repo(self, relative_workspace):
        ws = relative_workspace
        result = runner.invoke(
            app,
            ["run", "--config", "provisioner.yaml", "--phases-dir", "phases", "--state-dir", "state"],
        )
        assert result.exit_code == EXIT_SUCCESS, result.output

        store = FileStateStore(ws / "state")
        assert store.check("01-base/00-plain.sh")
        assert store.check("01-base/10-helpers.sh")
        assert store.check("base/extra")
        assert not (ws / "phases" / "01-base" / "state").exists()

        live = ws / "home" / ".zshrc"
        assert live.is_symlink()
        assert Path(os.readlink(live)) == ws / "repo" / "zsh" / ".zshrc"
        assert live.read_text() == "export EDITOR=vim\n"

    def test_second_run_skips_completed_units(self, relative_workspace):
        args = ["run", "--config", "provisioner.yaml", "--phases-dir", "phases", "--state-dir", "state"]
        assert runner.invoke(app, args).exit_code == EXIT_SUCCESS
        result = runner.invoke(app, args)
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "already completed" in result.output


class TestEntryPoint:
    def test_main_returns_exit_code(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["provisioner", "version"])
        assert main() == 0
