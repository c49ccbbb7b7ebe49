"""Running git in a working tree and reading its status output."""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field

# Git runs without any user or system configuration, so that nothing changes
# its output or defaults; identity is set so commits do not warn.
_GIT_ENV = {
    "GIT_CONFIG_NOSYSTEM": "1",
    "GIT_CONFIG": "/dev/null",
    "GIT_AUTHOR_NAME": "Sourcegraph",
    "GIT_AUTHOR_EMAIL": "batch-changes@example.com",
    "GIT_COMMITTER_NAME": "Sourcegraph",
    "GIT_COMMITTER_EMAIL": "batch-changes@example.com",
}


class GitCommandError(RuntimeError):
    """A git command exited unsuccessfully or could not be started."""

    def __init__(self, args, output: bytes):
        self.args_list = list(args)
        self.output = output
        text = output.decode("utf-8", errors="replace")
        super().__init__(f"'git {' '.join(self.args_list)}' failed: {text}")


class GitStatusError(ValueError):
    """Output of git status could not be understood."""


@dataclass
class Changes:
    """Files changed in a working tree, grouped by kind of change."""

    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[str] = field(default_factory=list)


def run_git_cmd(directory: str, *args: str) -> bytes:
    """Run git with the given arguments in directory and return its output."""
    git = shutil.which("git") or "git"
    try:
        completed = subprocess.run(
            [git, *args],
            cwd=directory,
            env=dict(_GIT_ENV),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as err:
        raise GitCommandError(args, str(err).encode("utf-8")) from err
    if completed.returncode != 0:
        raise GitCommandError(args, completed.stdout)
    return completed.stdout


def parse_git_status(output) -> Changes:
    """Parse the output of ``git status --porcelain``."""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    changes = Changes()
    stripped = output.strip()
    if not stripped:
        return changes
    for line in stripped.split("\n"):
        if len(line) < 4:
            raise GitStatusError(f"git status line has unrecognized format: {line!r}")
        path = line[3:]
        kind = line[0]
        if kind == "M":
            changes.modified.append(path)
        elif kind == "A":
            changes.added.append(path)
        elif kind == "D":
            changes.deleted.append(path)
        elif kind == "R":
            changes.renamed.append(path.split(" -> ")[-1])
    return changes