"""Version-control collaborator: ``git`` wrapper scoped to the config repository.

``stage`` and ``commit`` report success through the exit status only.
``commit`` records exactly the paths staged since the previous commit,
so unrelated changes sitting in the index are never swept in.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Protocol, Sequence

from provisioner.command import CommandResult, run_command

logger = logging.getLogger(__name__)


class VersionControl(Protocol):
    """What the Configuration Lifecycle Manager needs from a VCS."""

    def stage(self, paths: Sequence[Path]) -> bool: ...

    def commit(self, message: str) -> bool: ...

    def uncommitted(self, directory: Path) -> List[Path]: ...


class GitRepository:
    """``git -C <root> add/commit`` for the configuration repository."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self._staged: List[str] = []

    def _git(self, *args: str) -> CommandResult:
        return run_command(["git", "-C", str(self.root), *args])

    def _relative(self, path: Path) -> str:
        path = Path(path)
        try:
            return str(path.relative_to(self.root))
        except ValueError:
            return str(path)

    def stage(self, paths: Sequence[Path]) -> bool:
        rel = [self._relative(p) for p in paths]
        if not rel:
            return True
        result = self._git("add", "--", *rel)
        if not result.success:
            logger.warning(
                "git add failed (rc=%d): %s", result.returncode, result.stderr or "(no stderr)",
            )
            return False
        self._staged.extend(r for r in rel if r not in self._staged)
        return True

    def commit(self, message: str) -> bool:
        if not self._staged:
            logger.debug("Nothing staged; skipping commit")
            return True
        result = self._git("commit", "-m", message, "--", *self._staged)
        if not result.success:
            logger.warning(
                "git commit failed (rc=%d): %s",
                result.returncode,
                result.stderr or result.stdout or "(no output)",
            )
            return False
        self._staged = []
        return True

    def uncommitted(self, directory: Path) -> List[Path]:
        """Files under *directory* that no commit records yet.

        Covers untracked files and files added to the index whose commit
        never happened.  Returns ``[]`` when git cannot answer.
        """
        rel = self._relative(directory)
        untracked = self._git("ls-files", "--others", "--exclude-standard", "-z", "--", rel)
        added = self._git("diff", "--cached", "--relative", "--name-only", "--diff-filter=A", "-z", "--", rel)
        for result in (untracked, added):
            if not result.success:
                logger.warning(
                    "Cannot list uncommitted files (rc=%d): %s",
                    result.returncode,
                    result.stderr or "(no stderr)",
                )
                return []
        names = {n for r in (untracked, added) for n in r.stdout.split("\0") if n}
        return [self.root / name for name in sorted(names)]
