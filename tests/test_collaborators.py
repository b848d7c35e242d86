"""Tests for the subprocess collaborators: run_command, apt and git."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from provisioner.command import EXIT_NOT_FOUND, CommandResult, run_command
from provisioner.configs.git import GitRepository
from provisioner.packages.apt import AptPackageManager


# ── helpers ──────────────────────────────────────────────────────────────


def _completed(stdout: str = "", stderr: str = "", rc: int = 0):
    """Return a mock subprocess.CompletedProcess."""
    cp = MagicMock()
    cp.returncode = rc
    cp.stdout = stdout
    cp.stderr = stderr
    return cp


def _result(rc: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(command="x", returncode=rc, stdout=stdout, stderr=stderr)


# ── run_command ──────────────────────────────────────────────────────────


class TestRunCommand:
    @patch("provisioner.command.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = _completed(stdout=" ok \n")
        r = run_command(["echo", "ok"])
        assert r.success
        assert r.stdout == "ok"
        assert r.command == "echo ok"

    @patch("provisioner.command.subprocess.run")
    def test_nonzero_does_not_raise(self, mock_run):
        mock_run.return_value = _completed(stderr="E: boom", rc=100)
        r = run_command(["apt-get", "install", "-y", "x"])
        assert not r.success
        assert r.returncode == 100
        assert r.stderr == "E: boom"

    @patch("provisioner.command.subprocess.run", side_effect=FileNotFoundError)
    def test_missing_executable(self, _mock_run):
        r = run_command(["nope"])
        assert r.returncode == EXIT_NOT_FOUND
        assert "not found" in r.stderr

    @patch("provisioner.command.subprocess.run")
    def test_extra_env_and_cwd(self, mock_run, tmp_path):
        mock_run.return_value = _completed()
        run_command(["true"], cwd=tmp_path, extra_env={"FOO": "bar"})
        kwargs = mock_run.call_args.kwargs
        assert kwargs["env"]["FOO"] == "bar"
        assert kwargs["cwd"] == str(tmp_path)


# ── apt ──────────────────────────────────────────────────────────────────


class TestAptPackageManager:
    @patch("provisioner.packages.apt.run_command")
    def test_install_command(self, mock_rc):
        mock_rc.return_value = _result()
        assert AptPackageManager().install(["git", "curl"]) is True
        cmd = mock_rc.call_args.args[0]
        assert cmd == ["apt-get", "install", "-y", "git", "curl"]
        assert mock_rc.call_args.kwargs["extra_env"] == {"DEBIAN_FRONTEND": "noninteractive"}

    @patch("provisioner.packages.apt.run_command")
    def test_install_failure(self, mock_rc):
        mock_rc.return_value = _result(rc=100, stderr="E: Unable to locate package")
        assert AptPackageManager().install(["nope"]) is False

    @patch("provisioner.packages.apt.run_command")
    def test_empty_install_is_noop(self, mock_rc):
        assert AptPackageManager().install([]) is True
        mock_rc.assert_not_called()

    @patch("provisioner.packages.apt.run_command")
    def test_refresh_index(self, mock_rc):
        mock_rc.return_value = _result()
        assert AptPackageManager().refresh_index() is True
        assert mock_rc.call_args.args[0] == ["apt-get", "update"]

    @patch("provisioner.packages.apt.run_command")
    def test_dry_run_never_executes(self, mock_rc):
        mgr = AptPackageManager(dry_run=True)
        assert mgr.install(["git"]) is True
        assert mgr.refresh_index() is True
        mock_rc.assert_not_called()

    @patch("provisioner.packages.apt.run_command")
    def test_dpkg_probe(self, mock_rc):
        mgr = AptPackageManager()
        mock_rc.return_value = _result(stdout="install ok installed")
        assert mgr.is_installed("bash") is True
        mock_rc.return_value = _result(rc=1, stderr="no packages found")
        assert mgr.is_installed("nope") is False
        mock_rc.return_value = _result(stdout="deinstall ok config-files")
        assert mgr.is_installed("removed") is False


# ── git ──────────────────────────────────────────────────────────────────


class TestGitRepository:
    @patch("provisioner.configs.git.run_command")
    def test_stage_uses_relative_paths(self, mock_rc, tmp_path):
        mock_rc.return_value = _result()
        repo = GitRepository(tmp_path)
        assert repo.stage([tmp_path / "zsh" / ".zshrc"]) is True
        assert mock_rc.call_args.args[0] == ["git", "-C", str(tmp_path), "add", "--", "zsh/.zshrc"]

    @patch("provisioner.configs.git.run_command")
    def test_commit_scoped_to_staged(self, mock_rc, tmp_path):
        mock_rc.return_value = _result()
        repo = GitRepository(tmp_path)
        repo.stage([tmp_path / "zsh" / ".zshrc", tmp_path / "zsh" / ".zprofile"])
        assert repo.commit("Add zsh configurations: .zshrc .zprofile") is True
        cmd = mock_rc.call_args.args[0]
        assert cmd[:5] == ["git", "-C", str(tmp_path), "commit", "-m"]
        assert cmd[-3:] == ["--", "zsh/.zshrc", "zsh/.zprofile"]

    @patch("provisioner.configs.git.run_command")
    def test_commit_nothing_staged(self, mock_rc, tmp_path):
        assert GitRepository(tmp_path).commit("msg") is True
        mock_rc.assert_not_called()

    @patch("provisioner.configs.git.run_command")
    def test_commit_failure_keeps_staged(self, mock_rc, tmp_path):
        repo = GitRepository(tmp_path)
        mock_rc.return_value = _result()
        repo.stage([tmp_path / "a" / "f"])
        mock_rc.return_value = _result(rc=128, stderr="fatal: not a git repository")
        assert repo.commit("msg") is False
        mock_rc.return_value = _result()
        assert repo.commit("msg") is True
        assert mock_rc.call_args.args[0][-1] == "a/f"

    @patch("provisioner.configs.git.run_command")
    def test_stage_failure(self, mock_rc, tmp_path):
        mock_rc.return_value = _result(rc=128)
        assert GitRepository(tmp_path).stage([tmp_path / "x"]) is False

    @patch("provisioner.configs.git.run_command")
    def test_uncommitted_merges_untracked_and_added(self, mock_rc, tmp_path):
        mock_rc.side_effect = [
            _result(stdout="zsh/.zshrc\0"),
            _result(stdout="zsh/.zprofile\0zsh/.zshrc\0"),
        ]
        repo = GitRepository(tmp_path)
        assert repo.uncommitted(tmp_path / "zsh") == [
            tmp_path / "zsh" / ".zprofile",
            tmp_path / "zsh" / ".zshrc",
        ]
        first, second = (c.args[0] for c in mock_rc.call_args_list)
        assert first[3:] == ["ls-files", "--others", "--exclude-standard", "-z", "--", "zsh"]
        assert second[-2:] == ["--", "zsh"]

    @patch("provisioner.configs.git.run_command")
    def test_uncommitted_when_git_fails(self, mock_rc, tmp_path):
        mock_rc.return_value = _result(rc=128, stderr="fatal: not a git repository")
        assert GitRepository(tmp_path).uncommitted(tmp_path / "zsh") == []

    def test_relative_root_resolved(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert GitRepository("repo").root == tmp_path.resolve() / "repo"
