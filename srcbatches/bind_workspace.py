"""Workspaces that live in a host directory bind-mounted into containers."""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
import zipfile
from dataclasses import dataclass

from .gitcmd import Changes, parse_git_status, run_git_cmd
from .repo import Repository, slug_for_repo
from .workspace import Archive, Creator, CreatorType, Workspace


class PathExistsAsFileError(FileExistsError):
    """A path that should be a directory exists as something else."""

    def __init__(self, path: str):
        super().__init__(f"path already exists, but not as a directory: {path}")
        self.path = path


@dataclass
class BindWorkspace(Workspace):
    """A workspace held in a directory on the host."""

    temp_dir: str
    directory: str

    def close(self) -> None:
        shutil.rmtree(self.directory, ignore_errors=not os.path.exists(self.directory))

    def docker_run_opts(self, target: str) -> list[str]:
        return ["--mount", f"type=bind,source={self.directory},target={target}"]

    def work_dir(self) -> str:
        return self.directory

    def changes(self) -> Changes:
        run_git_cmd(self.directory, "add", "--all")
        return parse_git_status(run_git_cmd(self.directory, "status", "--porcelain"))

    def diff(self) -> bytes:
        # Unified diff without a/ and b/ prefixes, with binary changes inlined;
        # apply_diff relies on these options.
        return run_git_cmd(self.directory, "diff", "--cached", "--no-prefix", "--binary")

    def apply_diff(self, diff) -> None:
        if isinstance(diff, str):
            diff = diff.encode("utf-8")
        with tempfile.NamedTemporaryFile(
            dir=self.temp_dir, prefix="bind-workspace-test-", delete=False
        ) as tmp:
            tmp.write(diff)
            name = tmp.name
        try:
            run_git_cmd(self.directory, "apply", "-p0", name)
        finally:
            os.remove(name)
        run_git_cmd(self.directory, "add", "--all")


@dataclass
class BindWorkspaceCreator(Creator):
    """Creates bind workspaces inside a given directory."""

    directory: str

    @property
    def type(self) -> CreatorType:
        return CreatorType.BIND

    def create(self, repo: Repository, steps, archive: Archive) -> BindWorkspace:
        prefix = "workspace-" + slug_for_repo(repo.name, repo.rev())
        workdir = unzip_to_temp_dir(archive.path, self.directory, prefix)
        workspace = BindWorkspace(temp_dir=self.directory, directory=workdir)
        try:
            _copy_to_workspace(workdir, archive.additional_file_paths or {})
            _prepare_git_repo(workdir)
        except BaseException:
            workspace.close()
            raise
        return workspace


def _prepare_git_repo(directory: str) -> None:
    run_git_cmd(directory, "init")
    # --force so that files ignored by the repository are included too.
    run_git_cmd(directory, "add", "--force", "--all")
    run_git_cmd(
        directory, "commit", "--quiet", "--all", "--allow-empty", "-m", "src-action-exec"
    )


def _copy_to_workspace(directory: str, files: dict[str, str]) -> None:
    for name, src in files.items():
        info = os.stat(src)
        if not stat.S_ISREG(info.st_mode):
            raise ValueError(f"{src} is not a regular file")
        destination = os.path.join(directory, name)
        with open(src, "rb") as source, _open_destination(destination, info.st_mode) as target:
            shutil.copyfileobj(source, target)


def _open_destination(dest: str, mode: int):
    """Open dest for writing with permissions any container user can use."""
    mkdir_all(os.path.dirname(dest), "", 0o777)
    handle = open(dest, "wb")
    try:
        # Containers may run as another user, so the file is made globally
        # writable, keeping the execute bit where the source had one.
        os.chmod(dest, 0o777 if mode & 0o111 else 0o666)
    except BaseException:
        handle.close()
        raise
    return handle


def unzip_to_temp_dir(zip_file: str, temp_dir: str, prefix: str) -> str:
    """Unzip zip_file into a new directory under temp_dir and return its path."""
    volume_dir = tempfile.mkdtemp(prefix=prefix, dir=temp_dir)
    try:
        os.chmod(volume_dir, 0o777)
        unzip(zip_file, volume_dir)
    except BaseException:
        shutil.rmtree(volume_dir, ignore_errors=True)
        raise
    return volume_dir


def unzip(zip_file: str, dest: str) -> None:
    """Extract zip_file into dest, refusing entries that escape it."""
    output_base = os.path.normpath(dest) + os.sep
    with zipfile.ZipFile(zip_file) as archive:
        for info in archive.infolist():
            member = info.filename.replace("/", os.sep)
            fpath = os.path.normpath(os.path.join(dest, member))
            if not fpath.startswith(output_base):
                raise ValueError(f"{fpath}: illegal file path")
            if info.is_dir():
                mkdir_all(dest, member.rstrip(os.sep), 0o777)
                continue
            mode = (info.external_attr >> 16) & 0o777
            with archive.open(info) as source, _open_destination(fpath, mode) as target:
                shutil.copyfileobj(source, target)


def mkdir_all(base: str, path: str, perm: int) -> None:
    """Create base/path and give every directory in path the permission perm,
    regardless of the umask."""
    full = os.path.join(base, path)
    try:
        info = os.stat(full)
    except FileNotFoundError:
        os.makedirs(full, perm, exist_ok=True)
    else:
        if not stat.S_ISDIR(info.st_mode):
            raise PathExistsAsFileError(full)
    ensure_all(base, path, perm)


def ensure_all(base: str, path: str, perm: int) -> None:
    """Set perm on every directory named in path below base."""
    errors: list[OSError] = []
    parts = [base]
    for element in path.split(os.sep):
        parts.append(element)
        try:
            os.chmod(os.path.join(*parts), perm)
        except OSError as err:
            errors.append(err)
    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise OSError("; ".join(str(err) for err in errors)) from errors[0]