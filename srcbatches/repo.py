"""Repository records and helpers that derive names from them."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field

REF_PREFIX = "refs/heads/"


@dataclass
class Branch:
    """A named branch and the commit it points at."""

    name: str = ""
    target_oid: str = ""


@dataclass(eq=False)
class Repository:
    """A repository as reported by the code search instance.

    Instances compare and hash by identity so that they can serve as keys in
    result mappings.
    """

    id: str = ""
    name: str = ""
    url: str = ""
    service_type: str = ""
    default_branch: Branch | None = None
    branch: Branch = field(default_factory=Branch)
    commit_oid: str = ""
    file_matches: set[str] = field(default_factory=set)

    def rev(self) -> str:
        """Return the commit to work on: the chosen branch, else the default."""
        if self.branch.target_oid:
            return self.branch.target_oid
        if self.default_branch is not None:
            return self.default_branch.target_oid
        return ""

    def has_branch(self) -> bool:
        """Whether there is a branch that steps can be run against."""
        return bool(self.branch.name) or self.default_branch is not None


@dataclass(frozen=True)
class TemplatingRepo:
    """The view of a repository that step templates can see."""

    name: str
    file_matches: list[str]


def new_templating_repo(repo_name: str, file_matches) -> TemplatingRepo:
    """Build the templating view of a repository and its matched files."""
    return TemplatingRepo(name=repo_name, file_matches=sorted(file_matches))


def slug_for_path_in_repo(repo_name: str, commit: str, path: str) -> str:
    """Return a file-system safe name for a path inside a repository."""
    name = repo_name
    if path:
        # The path may hold separators that do not translate between
        # platforms, so it is hashed.
        digest = hashlib.sha256(path.encode("utf-8")).digest()
        encoded = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        name = f"{name}-{encoded}"
    return f"{name.replace('/', '-')}-{commit}"


def slug_for_repo(repo_name: str, commit: str) -> str:
    """Return a file-system safe name for a repository at a commit."""
    return f"{repo_name.replace('/', '-')}-{commit}"


def ensure_ref_prefix(ref: str) -> str:
    """Prefix a branch name with refs/heads/ unless it already has it."""
    if ref.startswith(REF_PREFIX):
        return ref
    return REF_PREFIX + ref