import os
import stat
import zipfile

import pytest

from srcbatches.bind_workspace import (
    BindWorkspace,
    BindWorkspaceCreator,
    PathExistsAsFileError,
    ensure_all,
    mkdir_all,
    unzip,
    unzip_to_temp_dir,
)
from srcbatches.gitcmd import GitCommandError
from srcbatches.repo import Branch, Repository
from srcbatches.workspace import Archive, CreatorType

REPO = Repository(
    id="src-cli",
    name="github.com/sourcegraph/src-cli",
    default_branch=Branch(name="main", target_oid="d34db33f"),
)

FILES_IN_ZIP = {"README.md": "# Welcome to the README\n"}


def zip_up_files(directory, files, name="repo.zip"):
    path = directory / name
    with zipfile.ZipFile(path, "w") as zw:
        for entry, body in files.items():
            zw.writestr(entry, body)
    return str(path)


def read_workspace_files(workspace):
    root = workspace.work_dir()
    files = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if not (dirpath == root and d == ".git")]
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            with open(full, encoding="utf-8") as handle:
                files[os.path.relpath(full, root)] = handle.read()
    return files


def perm(path):
    return stat.S_IMODE(os.stat(path).st_mode)


@pytest.fixture
def archive_path(tmp_path):
    fake = tmp_path / "fake"
    fake.mkdir()
    return zip_up_files(fake, FILES_IN_ZIP)


@pytest.fixture
def work_root(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    return str(root)


def test_creator_type(work_root):
    assert BindWorkspaceCreator(work_root).type == CreatorType.BIND


def test_create_success(archive_path, work_root):
    workspace = BindWorkspaceCreator(work_root).create(REPO, [], Archive(path=archive_path))
    assert read_workspace_files(workspace) == FILES_IN_ZIP
    assert os.path.basename(workspace.work_dir()).startswith(
        "workspace-github.com-sourcegraph-src-cli-d34db33f"
    )


def test_create_failure_on_bad_zip(tmp_path, work_root):
    bad_zip = tmp_path / "bad-zip"
    bad_zip.write_bytes(b"")
    with pytest.raises(zipfile.BadZipFile):
        BindWorkspaceCreator(work_root).create(REPO, [], Archive(path=str(bad_zip)))
    assert os.listdir(work_root) == []


def test_create_with_additional_files(tmp_path, archive_path, work_root):
    additional = {".gitignore": "This is the gitignore\n", "another-file": "This is another file"}
    paths = {}
    for name, content in additional.items():
        source = tmp_path / f"src{name}"
        source.write_text(content)
        paths[name] = str(source)
    archive = Archive(path=archive_path, additional_file_paths=paths)
    workspace = BindWorkspaceCreator(work_root).create(REPO, [], archive)
    assert read_workspace_files(workspace) == {**FILES_IN_ZIP, **additional}


def test_create_rejects_non_regular_additional_file(tmp_path, archive_path, work_root):
    archive = Archive(path=archive_path, additional_file_paths={"dir": str(tmp_path)})
    with pytest.raises(ValueError):
        BindWorkspaceCreator(work_root).create(REPO, [], archive)


def test_apply_diff_success(archive_path, work_root):
    diff = """diff --git README.md README.md
index 02a19af..a84667f 100644
--- README.md
+++ README.md
@@ -1 +1,3 @@
 # Welcome to the README
+
+This is a new line
diff --git new-file.txt new-file.txt
new file mode 100644
index 0000000..7bb2542
--- /dev/null
+++ new-file.txt
@@ -0,0 +1,2 @@
+check this out. this is a new file.
+written on a computer. what a blast.
"""
    want = {
        "README.md": "# Welcome to the README\n\nThis is a new line\n",
        "new-file.txt": "check this out. this is a new file.\nwritten on a computer. what a blast.\n",
    }
    workspace = BindWorkspaceCreator(work_root).create(REPO, [], Archive(path=archive_path))
    workspace.apply_diff(diff.encode())
    assert read_workspace_files(workspace) == want
    assert workspace.changes().added == ["new-file.txt"]


def test_apply_diff_failure(archive_path, work_root):
    workspace = BindWorkspaceCreator(work_root).create(REPO, [], Archive(path=archive_path))
    with pytest.raises(GitCommandError):
        workspace.apply_diff(b"lol this is not a diff but the computer doesn't know it yet, watch")


def test_changes_and_diff(archive_path, work_root):
    workspace = BindWorkspaceCreator(work_root).create(REPO, [], Archive(path=archive_path))
    with open(os.path.join(workspace.work_dir(), "README.md"), "a") as handle:
        handle.write("more\n")
    assert workspace.changes().modified == ["README.md"]
    assert b"+more" in workspace.diff()


def test_close_removes_directory(archive_path, work_root):
    workspace = BindWorkspaceCreator(work_root).create(REPO, [], Archive(path=archive_path))
    directory = workspace.work_dir()
    assert os.path.dirname(directory) == work_root
    assert os.listdir(work_root) == [os.path.basename(directory)]
    workspace.close()
    assert os.listdir(work_root) == []


def test_docker_run_opts():
    workspace = BindWorkspace(temp_dir="/tmp", directory="/some/dir")
    assert workspace.docker_run_opts("/work") == [
        "--mount",
        "type=bind,source=/some/dir,target=/work",
    ]


def test_unzip_sets_permissions(tmp_path):
    path = tmp_path / "perm.zip"
    with zipfile.ZipFile(path, "w") as zw:
        exe = zipfile.ZipInfo("bin/run.sh")
        exe.external_attr = 0o755 << 16
        zw.writestr(exe, "#!/bin/sh\n")
        plain = zipfile.ZipInfo("data.txt")
        plain.external_attr = 0o644 << 16
        zw.writestr(plain, "data")
    dest = tmp_path / "out"
    dest.mkdir()
    unzip(str(path), str(dest))
    assert perm(dest / "bin" / "run.sh") == 0o777
    assert perm(dest / "data.txt") == 0o666
    assert (dest / "data.txt").read_text() == "data"


def test_unzip_rejects_zip_slip(tmp_path):
    path = zip_up_files(tmp_path, {"../evil.txt": "nope"}, name="slip.zip")
    dest = tmp_path / "out"
    dest.mkdir()
    with pytest.raises(ValueError, match="illegal file path"):
        unzip(path, str(dest))
    assert not (tmp_path / "evil.txt").exists()


def test_unzip_to_temp_dir(tmp_path, archive_path):
    root = tmp_path / "root"
    root.mkdir()
    directory = unzip_to_temp_dir(archive_path, str(root), "prefix-")
    assert os.path.basename(directory).startswith("prefix-")
    assert perm(directory) == 0o777
    assert (root / os.path.basename(directory) / "README.md").read_text() == FILES_IN_ZIP["README.md"]


@pytest.fixture
def base(tmp_path):
    directory = tmp_path / "base"
    directory.mkdir()
    os.chmod(directory, 0o700)
    return str(directory)


def test_mkdir_all_directory_exists(base):
    os.makedirs(os.path.join(base, "exist"), 0o755)
    mkdir_all(base, "exist", 0o750)
    assert perm(os.path.join(base, "exist")) == 0o750
    assert os.path.isdir(os.path.join(base, "exist"))


def test_mkdir_all_directory_does_not_exist(base):
    mkdir_all(base, "new", 0o750)
    assert perm(os.path.join(base, "new")) == 0o750
    assert os.path.isdir(os.path.join(base, "new"))


def test_mkdir_all_path_is_a_file(base):
    open(os.path.join(base, "file"), "w").close()
    with pytest.raises(PathExistsAsFileError):
        mkdir_all(base, "file", 0o750)


def test_mkdir_all_stat_error(base):
    open(os.path.join(base, "locked"), "w").close()
    with pytest.raises(OSError) as info:
        mkdir_all(base, os.path.join("locked", "file"), 0o750)
    assert not isinstance(info.value, PathExistsAsFileError)


def test_ensure_all(base):
    os.makedirs(os.path.join(base, "a", "b", "c"), 0o700)
    dirs = [
        os.path.join(base, "a"),
        os.path.join(base, "a", "b"),
        os.path.join(base, "a", "b", "c"),
    ]
    for directory in dirs:
        os.chmod(directory, 0o700)

    ensure_all(base, os.path.join("a", "b", "c"), 0o750)
    assert [perm(directory) for directory in dirs] == [0o750, 0o750, 0o750]
    assert perm(base) == 0o700

    with pytest.raises(OSError):
        ensure_all(base, "d", 0o750)