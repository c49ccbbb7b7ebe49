import fnmatch
import subprocess
from dataclasses import dataclass

import pytest

from srcbatches.gitcmd import Changes, GitStatusError
from srcbatches.repo import Branch, Repository
from srcbatches.volume_workspace import (
    DOCKER_VOLUME_WORKSPACE_IMAGE,
    VolumeWorkspace,
    VolumeWorkspaceCreator,
)
from srcbatches.workspace import ROOT, UIDGID, Archive, CreatorType

VOLUME_ID = "VOLUME-ID"
IMAGE = DOCKER_VOLUME_WORKSPACE_IMAGE


@dataclass
class Step:
    container: str = ""


class FakeImage:
    def __init__(self, ug=None, err=None):
        self.ug = ug
        self.err = err

    def uid_gid(self):
        if self.err is not None:
            raise self.err
        return self.ug


class FakeDocker:
    """Plays back expected command lines, matched as globs."""

    def __init__(self, *expectations):
        self.remaining = list(expectations)
        self.calls = []

    def __call__(self, args):
        args = list(args)
        self.calls.append(args)
        assert self.remaining, f"unexpected command: {args}"
        (stdout, code, validator), pattern = self.remaining.pop(0)
        assert len(args) == len(pattern), f"{args} != {pattern}"
        for have, want in zip(args, pattern):
            assert fnmatch.fnmatchcase(have, want), f"{have!r} !~ {want!r}"
        if validator is not None:
            validator(args)
        if code:
            raise subprocess.CalledProcessError(code, args, output=stdout)
        return stdout


def ok(stdout=b"", validator=None):
    return (stdout, 0, validator)


def fail():
    return (b"", 1, None)


def volume_create(behaviour):
    return behaviour, ["docker", "volume", "create"]


def chown(behaviour, ug="0:0"):
    return behaviour, [
        "docker", "run", "--rm", "--init", "--workdir", "/work",
        "--user", "0:0",
        "--mount", f"type=volume,source={VOLUME_ID},target=/work",
        IMAGE, "sh", "-c", f"touch /work/*; chown -R {ug} /work",
    ]


def unzip(behaviour, ug="0:0"):
    return behaviour, [
        "docker", "run", "--rm", "--init", "--workdir", "/work",
        "--mount", "type=bind,source=*,target=/tmp/zip,ro",
        "--user", ug,
        "--mount", f"type=volume,source={VOLUME_ID},target=/work",
        IMAGE, "sh", "-c", "unzip /tmp/zip; rm /work/*",
    ]


def run_sh(behaviour, ug="0:0"):
    return behaviour, [
        "docker", "run", "--rm", "--init", "--workdir", "/work",
        "--mount", "type=bind,source=*,target=/run.sh,ro",
        "--user", ug,
        "--mount", f"type=volume,source={VOLUME_ID},target=/work",
        IMAGE, "sh", "/run.sh",
    ]


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "volume-workspace.zip"
    path.write_bytes(b"")
    return Archive(path=str(path))


@pytest.fixture
def repo():
    return Repository(default_branch=Branch(name="main"))


def root_image(_container):
    return FakeImage(ug=ROOT)


@pytest.mark.parametrize(
    "steps,ensure,ug",
    [
        ([], lambda _c: None, "0:0"),
        ([Step()], root_image, "0:0"),
        ([Step()], lambda _c: FakeImage(ug=UIDGID(1, 2)), "1:2"),
    ],
    ids=["no steps", "one root:root step", "one user:user step"],
)
def test_create_success(tmp_path, archive, repo, steps, ensure, ug):
    docker = FakeDocker(
        volume_create(ok(VOLUME_ID.encode())),
        chown(ok(), ug),
        unzip(ok(), ug),
        run_sh(ok(), ug),
    )
    creator = VolumeWorkspaceCreator(temp_dir=str(tmp_path), ensure_image=ensure, runner=docker)
    workspace = creator.create(repo, steps, archive)
    assert workspace.volume == VOLUME_ID
    assert str(workspace.uid_gid) == ug
    assert docker.remaining == []


def test_create_uses_same_placeholder_for_touch_and_rm(tmp_path, archive, repo):
    docker = FakeDocker(
        volume_create(ok(VOLUME_ID.encode())), chown(ok()), unzip(ok()), run_sh(ok())
    )
    creator = VolumeWorkspaceCreator(temp_dir=str(tmp_path), ensure_image=root_image, runner=docker)
    creator.create(repo, [Step()], archive)
    touched = docker.calls[1][-1].split(";")[0].removeprefix("touch /work/")
    removed = docker.calls[2][-1].split("; ")[1].removeprefix("rm /work/")
    assert touched == removed
    assert touched.startswith(".batch-change-workspace-placeholder-")


@pytest.mark.parametrize(
    "expectations,message",
    [
        ([volume_create(fail())], "creating Docker volume"),
        ([volume_create(ok(VOLUME_ID.encode())), chown(fail())], "unzipping repo into workspace"),
        (
            [volume_create(ok(VOLUME_ID.encode())), chown(ok()), unzip(fail())],
            "unzipping repo into workspace",
        ),
        (
            [volume_create(ok(VOLUME_ID.encode())), chown(ok()), unzip(ok()), run_sh(fail())],
            "preparing local git repo",
        ),
    ],
    ids=["docker volume create failure", "chown failure", "unzip failure", "git init failure"],
)
def test_create_failure(tmp_path, archive, repo, expectations, message):
    docker = FakeDocker(*expectations)
    creator = VolumeWorkspaceCreator(temp_dir=str(tmp_path), ensure_image=root_image, runner=docker)
    with pytest.raises(RuntimeError, match=message):
        creator.create(repo, [Step()], archive)
    assert docker.remaining == []


def test_create_uid_gid_failure(tmp_path, archive, repo):
    docker = FakeDocker(volume_create(ok(VOLUME_ID.encode())))
    creator = VolumeWorkspaceCreator(
        temp_dir=str(tmp_path),
        ensure_image=lambda _c: FakeImage(err=RuntimeError("foo")),
        runner=docker,
    )
    with pytest.raises(RuntimeError, match="getting container UID and GID"):
        creator.create(repo, [Step()], archive)


def test_create_additional_files(tmp_path, archive, repo):
    files = {
        ".gitignore": "-tmp-additional-file.gitignore",
        "another-file": "-tmp-additional-fileanother-file",
    }
    archive.additional_file_paths = files
    docker = FakeDocker(
        volume_create(ok(VOLUME_ID.encode())),
        chown(ok()),
        unzip(ok()),
        (ok(), [
            "docker", "run", "--rm", "--init", "--workdir", "/work",
            "--user", "0:0",
            "--mount", f"type=volume,source={VOLUME_ID},target=/work",
            "--mount", f"type=bind,source={files['.gitignore']},target=/tmp/.gitignore,ro",
            "--mount", f"type=bind,source={files['another-file']},target=/tmp/another-file,ro",
            IMAGE, "sh", "-c",
            "cp /tmp/.gitignore /work/.gitignore && cp /tmp/another-file /work/another-file;",
        ]),
        run_sh(ok()),
    )
    creator = VolumeWorkspaceCreator(temp_dir=str(tmp_path), ensure_image=root_image, runner=docker)
    workspace = creator.create(repo, [Step()], archive)
    assert workspace.volume == VOLUME_ID
    assert docker.remaining == []


def test_creator_type():
    assert VolumeWorkspaceCreator().type == CreatorType.VOLUME


def test_close_success():
    docker = FakeDocker((ok(), ["docker", "volume", "rm", VOLUME_ID]))
    VolumeWorkspace(volume=VOLUME_ID, runner=docker).close()
    assert docker.calls == [["docker", "volume", "rm", VOLUME_ID]]


def test_close_failure():
    docker = FakeDocker((fail(), ["docker", "volume", "rm", VOLUME_ID]))
    with pytest.raises(subprocess.CalledProcessError):
        VolumeWorkspace(volume=VOLUME_ID, runner=docker).close()


def test_docker_run_opts():
    w = VolumeWorkspace(volume="VOLUME", uid_gid=UIDGID(1, 2))
    assert w.docker_run_opts("TARGET") == [
        "--user", "1:2",
        "--mount", "type=volume,source=VOLUME,target=TARGET",
    ]


def test_work_dir_is_none():
    assert VolumeWorkspace(volume=VOLUME_ID).work_dir() is None


@pytest.mark.parametrize(
    "stdout,want",
    [
        (b"", Changes()),
        (
            b"M  go.mod\nM  internal/campaigns/volume_workspace.go\n"
            b"M  internal/campaigns/volume_workspace_test.go",
            Changes(modified=[
                "go.mod",
                "internal/campaigns/volume_workspace.go",
                "internal/campaigns/volume_workspace_test.go",
            ]),
        ),
    ],
    ids=["empty", "valid"],
)
def test_changes_success(tmp_path, stdout, want):
    docker = FakeDocker(run_sh(ok(stdout)))
    w = VolumeWorkspace(volume=VOLUME_ID, temp_dir=str(tmp_path), runner=docker)
    assert w.changes() == want


def test_changes_exit_code_failure(tmp_path):
    w = VolumeWorkspace(volume=VOLUME_ID, temp_dir=str(tmp_path), runner=FakeDocker(run_sh(fail())))
    with pytest.raises(RuntimeError, match="running git status"):
        w.changes()


def test_changes_malformed_status(tmp_path):
    w = VolumeWorkspace(
        volume=VOLUME_ID, temp_dir=str(tmp_path), runner=FakeDocker(run_sh(ok(b"Z")))
    )
    with pytest.raises(GitStatusError):
        w.changes()


@pytest.mark.parametrize(
    "want",
    [
        b"",
        b"diff --git a/go.mod b/go.mod\nindex 06471f4..5f9d3fa 100644\n--- a/go.mod\n+++ b/go.mod",
    ],
    ids=["empty", "valid"],
)
def test_diff_success(tmp_path, want):
    w = VolumeWorkspace(volume=VOLUME_ID, temp_dir=str(tmp_path), runner=FakeDocker(run_sh(ok(want))))
    assert w.diff() == want


def test_diff_failure(tmp_path):
    w = VolumeWorkspace(volume=VOLUME_ID, temp_dir=str(tmp_path), runner=FakeDocker(run_sh(fail())))
    with pytest.raises(RuntimeError, match="git diff"):
        w.diff()


def test_apply_diff_puts_diff_in_script(tmp_path):
    seen = []

    def capture(args):
        source = args[7].split(",")[1].split("=", 1)[1]
        with open(source, encoding="utf-8") as handle:
            seen.append(handle.read())

    docker = FakeDocker(run_sh(ok(validator=capture)), run_sh(ok(b"dummydiff")))
    w = VolumeWorkspace(volume=VOLUME_ID, temp_dir=str(tmp_path), runner=docker)
    w.apply_diff(b"dummydiff")
    assert len(seen) == 1
    assert "dummydiff" in seen[0]
    assert "git apply -p0 -" in seen[0]
    assert w.diff() == b"dummydiff"
    assert docker.remaining == []


def test_apply_diff_failure(tmp_path):
    w = VolumeWorkspace(volume=VOLUME_ID, temp_dir=str(tmp_path), runner=FakeDocker(run_sh(fail())))
    with pytest.raises(RuntimeError, match="git apply diff"):
        w.apply_diff(b"dummydiff")


def test_run_script_writes_script_file(tmp_path):
    script = "#!/bin/sh\n\necho FOO"
    seen = []

    def capture(args):
        source = args[7].split(",")[1].split("=", 1)[1]
        with open(source, encoding="utf-8") as handle:
            seen.append((source, handle.read()))

    docker = FakeDocker(run_sh(ok(b"FOO\n", validator=capture)))
    w = VolumeWorkspace(volume=VOLUME_ID, temp_dir=str(tmp_path), runner=docker)
    assert w.run_script("/work", script) == b"FOO\n"
    assert seen[0][1] == script
    # The temporary script is removed afterwards.
    assert not (tmp_path / seen[0][0]).exists()