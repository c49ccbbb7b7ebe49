"""Workspaces that live on Docker volumes rather than on the host."""

from __future__ import annotations

import contextlib
import os
import secrets
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence

from .gitcmd import Changes, GitStatusError, parse_git_status
from .repo import Repository
from .workspace import ROOT, UIDGID, Archive, Creator, CreatorType, Workspace

# The image the unzip and git commands run in.
DOCKER_VOLUME_WORKSPACE_IMAGE = "sourcegraph/src-batch-change-volume-workspace:latest"

CommandRunner = Callable[[Sequence[str]], bytes]

_PREPARE_GIT_REPO_SCRIPT = """#!/bin/sh

set -e
set -x

git init

# These are never used for real commits, but git needs something set.
git config user.name 'Sourcegraph Batch Changes'
git config user.email batch-changes@example.com

# --force because we want previously "gitignored" files in the repository
git add --force --all
git commit --quiet --all --allow-empty -m src-action-exec
"""

_CHANGES_SCRIPT = """#!/bin/sh

set -e
# No set -x here, since the git status output is parsed.

git add --all > /dev/null
exec git status --porcelain
"""

# Unified diff without a/ and b/ prefixes, with binary changes inlined;
# apply_diff relies on these options.
_DIFF_SCRIPT = """#!/bin/sh

exec git diff --cached --no-prefix --binary
"""

_APPLY_DIFF_SCRIPT = """#!/bin/sh

cat <<'EOF' | exec git apply -p0 -
{diff}
EOF

git add --all > /dev/null
"""


def run_command(args: Sequence[str]) -> bytes:
    """Run a command and return its combined output; raise on a non-zero exit."""
    completed = subprocess.run(
        list(args), stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
    )
    if completed.returncode != 0:
        raise subprocess.CalledProcessError(
            completed.returncode, list(args), output=completed.stdout
        )
    return completed.stdout


def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


@contextlib.contextmanager
def _wrapped(message: str) -> Iterator[None]:
    try:
        yield
    except (subprocess.CalledProcessError, RuntimeError, OSError) as err:
        raise RuntimeError(f"{message}: {err}") from err


def _container_of(step) -> str:
    if isinstance(step, dict):
        return step.get("container", "")
    return getattr(step, "container", "")


@dataclass
class VolumeWorkspace(Workspace):
    """A workspace on a Docker volume, invisible to the host file system."""

    volume: str
    temp_dir: str | None = None
    uid_gid: UIDGID = ROOT
    runner: CommandRunner = field(default=run_command, repr=False)

    def close(self) -> None:
        self.runner(["docker", "volume", "rm", self.volume])

    def docker_run_opts(self, target: str) -> list[str]:
        return self._docker_run_opts_with_user(self.uid_gid, target)

    def work_dir(self) -> None:
        return None

    def changes(self) -> Changes:
        with _wrapped("running git status"):
            out = self.run_script("/work", _CHANGES_SCRIPT)
        try:
            return parse_git_status(out)
        except GitStatusError as err:
            raise GitStatusError(
                f"parsing git status output:\n\n{_text(out)}: {err}"
            ) from err

    def diff(self) -> bytes:
        with _wrapped("git diff"):
            return self.run_script("/work", _DIFF_SCRIPT)

    def apply_diff(self, diff) -> None:
        script = _APPLY_DIFF_SCRIPT.format(diff=_text(diff))
        with _wrapped("git apply diff"):
            self.run_script("/work", script)

    def run_script(self, target: str, script: str) -> bytes:
        """Mount script into a container on the volume, run it and return its output."""
        fd, name = tempfile.mkstemp(prefix="src-run-", dir=self.temp_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(script)
            # Make the script usable whatever the umask and container user.
            with contextlib.suppress(OSError):
                os.chmod(name, 0o755)
            args = [
                "docker",
                "run",
                "--rm",
                "--init",
                "--workdir",
                target,
                "--mount",
                f"type=bind,source={name},target=/run.sh,ro",
                *self.docker_run_opts(target),
                DOCKER_VOLUME_WORKSPACE_IMAGE,
                "sh",
                "/run.sh",
            ]
            try:
                return self.runner(args)
            except subprocess.CalledProcessError as err:
                raise RuntimeError(f"Docker output:\n\n{_text(err.output)}\n\n") from err
        finally:
            with contextlib.suppress(OSError):
                os.remove(name)

    def _docker_run_opts_with_user(self, ug: UIDGID, target: str) -> list[str]:
        return [
            "--user",
            str(ug),
            "--mount",
            f"type=volume,source={self.volume},target={target}",
        ]


@dataclass
class VolumeWorkspaceCreator(Creator):
    """Creates workspaces on fresh Docker volumes."""

    temp_dir: str | None = None
    ensure_image: Callable[[str], object] | None = None
    runner: CommandRunner = field(default=run_command, repr=False)

    @property
    def type(self) -> CreatorType:
        return CreatorType.VOLUME

    def create(self, repo: Repository, steps, archive: Archive) -> VolumeWorkspace:
        with _wrapped("creating Docker volume"):
            volume = self.runner(["docker", "volume", "create"]).strip().decode("utf-8")

        # The user the step containers will run as.
        ug = ROOT
        if steps:
            if self.ensure_image is None:
                raise ValueError("no image source configured for the workspace creator")
            image = self.ensure_image(_container_of(steps[0]))
            try:
                ug = image.uid_gid()
            except Exception as err:
                raise RuntimeError(f"getting container UID and GID: {err}") from err

        workspace = VolumeWorkspace(
            volume=volume, temp_dir=self.temp_dir, uid_gid=ug, runner=self.runner
        )
        with _wrapped("unzipping repo into workspace"):
            self._unzip_repo_into_volume(workspace, archive.path)
        with _wrapped("copying additional files into workspace"):
            self._copy_files_into_volume(workspace, archive.additional_file_paths or {})
        with _wrapped("preparing local git repo"), _wrapped("preparing workspace"):
            workspace.run_script("/work", _PREPARE_GIT_REPO_SCRIPT)
        return workspace

    def _unzip_repo_into_volume(self, w: VolumeWorkspace, zip_path: str) -> None:
        # A placeholder file must exist in the volume before unzipping for
        # the ownership to persist; a random name is assumed not to clash.
        dummy = f".batch-change-workspace-placeholder-{secrets.token_hex(16)}"

        chown = [
            "docker",
            "run",
            "--rm",
            "--init",
            "--workdir",
            "/work",
            *w._docker_run_opts_with_user(ROOT, "/work"),
            DOCKER_VOLUME_WORKSPACE_IMAGE,
            "sh",
            "-c",
            f"touch /work/{dummy}; chown -R {w.uid_gid} /work",
        ]
        try:
            self.runner(chown)
        except subprocess.CalledProcessError as err:
            raise RuntimeError(f"chown output:\n\n{_text(err.output)}\n\n") from err

        unzip = [
            "docker",
            "run",
            "--rm",
            "--init",
            "--workdir",
            "/work",
            "--mount",
            f"type=bind,source={zip_path},target=/tmp/zip,ro",
            *w._docker_run_opts_with_user(w.uid_gid, "/work"),
            DOCKER_VOLUME_WORKSPACE_IMAGE,
            "sh",
            "-c",
            f"unzip /tmp/zip; rm /work/{dummy}",
        ]
        try:
            self.runner(unzip)
        except subprocess.CalledProcessError as err:
            raise RuntimeError(f"unzip output:\n\n{_text(err.output)}\n\n") from err

    def _copy_files_into_volume(self, w: VolumeWorkspace, files: dict[str, str]) -> None:
        if not files:
            return
        args = [
            "docker",
            "run",
            "--rm",
            "--init",
            "--workdir",
            "/work",
            *w._docker_run_opts_with_user(w.uid_gid, "/work"),
        ]
        copy_cmds = []
        for name in sorted(files):
            args += ["--mount", f"type=bind,source={files[name]},target=/tmp/{name},ro"]
            copy_cmds.append(f"cp /tmp/{name} /work/{name}")
        args += [DOCKER_VOLUME_WORKSPACE_IMAGE, "sh", "-c", " && ".join(copy_cmds) + ";"]
        try:
            self.runner(args)
        except subprocess.CalledProcessError as err:
            raise RuntimeError(f"copy output:\n\n{_text(err.output)}\n\n") from err