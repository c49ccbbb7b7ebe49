"""Search queries, search results and checks on changeset specs."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .repo import Branch, Repository

HARD_CODED_COUNT = " count:999999"

_DEFAULT_QUERY_COUNT = re.compile(r"\bcount:(\d+|all)\b")
_HEADS_PREFIX = "refs/heads/"


def set_default_query_count(query: str) -> str:
    """Add a large result count to a search query that sets none."""
    if _DEFAULT_QUERY_COUNT.search(query):
        return query
    return query + HARD_CODED_COUNT


def _branch_from_json(data: dict) -> Branch:
    return Branch(
        name=data.get("name") or "",
        target_oid=(data.get("target") or {}).get("oid") or "",
    )


def _repository_from_json(data: dict) -> Repository:
    default = data.get("defaultBranch")
    branch = data.get("branch")
    return Repository(
        id=data.get("id") or "",
        name=data.get("name") or "",
        url=data.get("url") or "",
        service_type=(data.get("externalRepository") or {}).get("serviceType") or "",
        default_branch=_branch_from_json(default) if default else None,
        branch=_branch_from_json(branch) if branch else Branch(),
        commit_oid=(data.get("commit") or {}).get("oid") or "",
    )


def parse_search_result(data) -> Repository:
    """Turn one search result, a repository or a file match, into a Repository.

    A file match yields its repository with the matched path recorded.
    """
    if isinstance(data, (str, bytes, bytearray)):
        data = json.loads(data)
    typename = data.get("__typename")
    if typename == "FileMatch":
        repo = _repository_from_json(data.get("repository") or {})
        repo.file_matches = {(data.get("file") or {}).get("path") or ""}
        return repo
    if typename == "Repository":
        repo = _repository_from_json(data)
        repo.file_matches = set()
        return repo
    raise ValueError(f'unknown GraphQL type "{typename}"')


@dataclass
class ChangesetSpec:
    """A changeset to create on a code host, or an existing one to import."""

    base_repository: str = ""
    base_ref: str = ""
    base_rev: str = ""
    head_repository: str = ""
    head_ref: str = ""
    title: str = ""
    body: str = ""
    commits: list[dict[str, Any]] = field(default_factory=list)
    published: Any = None
    external_id: str = ""

    @property
    def is_imported(self) -> bool:
        """Whether this spec imports an existing changeset."""
        return bool(self.external_id)

    def to_dict(self) -> dict[str, Any]:
        """The JSON form the server expects."""
        if self.is_imported:
            return {"baseRepository": self.base_repository, "externalID": self.external_id}
        data: dict[str, Any] = {
            "baseRepository": self.base_repository,
            "baseRef": self.base_ref,
            "baseRev": self.base_rev,
            "headRepository": self.head_repository,
            "headRef": self.head_ref,
            "title": self.title,
            "body": self.body,
            "commits": list(self.commits),
        }
        if self.published is not None:
            data["published"] = self.published
        return data


class DuplicateBranchesError(ValueError):
    """Several changeset specs push to the same branch of one repository."""

    def __init__(self, duplicates: dict[Repository, dict[str, int]]):
        self.duplicates = duplicates
        lines = ["Multiple changeset specs have the same branch:\n\n"]
        for repo, branches in duplicates.items():
            for branch, count in branches.items():
                if branch.startswith(_HEADS_PREFIX):
                    branch = branch[len(_HEADS_PREFIX):]
                lines.append(f'\t* {repo.name}: {count} changeset specs have the branch "{branch}"\n')
        lines.append(
            "\nMake sure that the changesetTemplate.branch field in the batch spec "
            "produces unique values for each changeset in a single repository and "
            "rerun this command."
        )
        super().__init__("".join(lines))


def validate_changeset_specs(
    repos: Iterable[Repository], specs: Iterable[ChangesetSpec]
) -> None:
    """Raise DuplicateBranchesError if two specs share a branch in one repository.

    Imported changesets are never checked.
    """
    repo_by_id = {repo.id: repo for repo in repos}

    by_repo_and_branch: dict[str, dict[str, int]] = {}
    for spec in specs:
        if spec.is_imported:
            continue
        branches = by_repo_and_branch.setdefault(spec.head_repository, {})
        branches[spec.head_ref] = branches.get(spec.head_ref, 0) + 1

    duplicates: dict[Repository, dict[str, int]] = {}
    for repo_id, branches in by_repo_and_branch.items():
        for branch, count in branches.items():
            if count < 2:
                continue
            repo = repo_by_id.get(repo_id)
            if repo is None:
                repo = repo_by_id.setdefault(repo_id, Repository(id=repo_id, name=repo_id))
            duplicates.setdefault(repo, {})[branch] = count

    if duplicates:
        raise DuplicateBranchesError(duplicates)