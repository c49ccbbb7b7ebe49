"""Talking to the code search instance to resolve what a batch spec targets."""

from __future__ import annotations

import gzip
import json
import posixpath
import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from .query import (
    ChangesetSpec,
    parse_search_result,
    set_default_query_count,
    validate_changeset_specs,
)
from .repo import Branch, Repository
from .workspaces import BatchSpec, RepoWorkspace, Task, build_tasks, find_workspaces

FIND_DIRECTORIES_BATCH_SIZE = 50

_SUPPORTED_SERVICE_TYPES = frozenset({"github", "gitlab", "bitbucketserver"})

_REPOSITORY_FIELDS_FRAGMENT = """
fragment repositoryFields on Repository {
    id
    name
    url
    externalRepository {
        serviceType
    }
    defaultBranch {
        name
        target {
            oid
        }
    }
    commit(rev: $rev) @include(if: $queryCommit) {
        oid
    }
}
"""

_CREATE_CHANGESET_SPEC_MUTATION = """
mutation CreateChangesetSpec($spec: String!) {
    createChangesetSpec(changesetSpec: $spec) {
        ... on HiddenChangesetSpec {
            id
        }
        ... on VisibleChangesetSpec {
            id
        }
    }
}
"""

_NAMESPACE_QUERY = """
query NamespaceQuery($name: String!) {
    user(username: $name) {
        id
    }

    organization(name: $name) {
        id
    }
}
"""

_CURRENT_USER_QUERY = """
query GetCurrentUserID {
    currentUser {
        id
    }
}
"""

_REPOSITORY_NAME_QUERY = (
    """
query Repository($name: String!, $queryCommit: Boolean!, $rev: String!) {
    repository(name: $name) {
        ...repositoryFields
    }
}
"""
    + _REPOSITORY_FIELDS_FRAGMENT
)

_REPOSITORY_SEARCH_QUERY = (
    """
query ChangesetRepos(
    $query: String!,
    $queryCommit: Boolean!,
    $rev: String!,
) {
    search(query: $query, version: V2) {
        results {
            results {
                __typename
                ... on Repository {
                    ...repositoryFields
                }
                ... on FileMatch {
                    file { path }
                    repository {
                        ...repositoryFields
                    }
                }
            }
        }
    }
}
"""
    + _REPOSITORY_FIELDS_FRAGMENT
)

_SEARCH_ALIAS_TEMPLATE = """{alias}: search(query: {query}, version: V2) {{
    results {{
        results {{
            __typename
            ... on FileMatch {{
                file {{ path }}
            }}
        }}
    }}
}}
"""

_EXAMPLE_SPEC = """name: NAME-OF-YOUR-BATCH-CHANGE
description: DESCRIPTION-OF-YOUR-BATCH-CHANGE

# "on" specifies on which repositories to execute the "steps".
on:
  # Example: find all repositories that contain a README.md file.
  - repositoriesMatchingQuery: file:README.md

# "steps" are run in each repository. Each step is run in a Docker container
# with the repository as the working directory. Once complete, each
# repository's resulting diff is captured.
steps:
  # Example: append "Hello World" to every README.md
  - run: echo "Hello World" | tee -a $(find -name README.md)
    container: alpine:3

# "changesetTemplate" describes the changeset (e.g., GitHub pull request) that
# will be created for each repository.
changesetTemplate:
  title: Hello World
  body: This adds Hello World to the README

  branch: BRANCH-NAME-IN-EACH-REPOSITORY # Push the commit to this branch.

  commit:
    author:
      name: {author_name}
      email: {author_email}
    message: Append Hello World to all README.md files
"""

_EXAMPLE_SPEC_PUBLISH_FLAG = """
  # Change published to true once you're ready to create changesets on the code host.
  published: false
"""

_DEFAULT_AUTHOR_NAME = "Sourcegraph"
_DEFAULT_AUTHOR_EMAIL = "batch-changes@example.com"

_HTML_ESCAPES = {
    "\0": "\ufffd",
    '"': "&#34;",
    "'": "&#39;",
    "&": "&amp;",
    "+": "&#43;",
    "<": "&lt;",
    ">": "&gt;",
}

_REGEX_META = set("\\.+*?()|[]{}^$")


class GraphQLError(RuntimeError):
    """The server answered a query with errors; any partial data is kept."""

    def __init__(self, errors: list, data: dict | None = None):
        self.errors = list(errors)
        self.data = data or {}
        messages = [
            e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in self.errors
        ]
        super().__init__("; ".join(messages) or "GraphQL error")


class MalformedOnError(ValueError):
    """An "on" entry names neither a repository nor a query."""

    def __init__(self) -> None:
        super().__init__("malformed 'on' field; missing either a repository name or a query")


class UnsupportedRepositoriesError(RuntimeError):
    """Some repositories live on code hosts that batch changes do not support.

    ``repositories`` holds the repositories that remain usable.
    """

    def __init__(self, unsupported: list[Repository], repositories: list[Repository]):
        self.unsupported = list(unsupported)
        self.repositories = list(repositories)
        names = ", ".join(repo.name for repo in self.unsupported)
        super().__init__(f"found repositories on unsupported code hosts: {names}")


class IgnoredRepositoriesError(RuntimeError):
    """Some repositories contain .batchignore files and are skipped.

    ``repositories`` holds the repositories that remain usable.
    """

    def __init__(self, ignored: list[Repository], repositories: list[Repository]):
        self.ignored = list(ignored)
        self.repositories = list(repositories)
        names = ", ".join(repo.name for repo in self.ignored)
        super().__init__(f"found repositories containing .batchignore files: {names}")


@dataclass(frozen=True)
class OnQueryOrRepository:
    """One entry of a batch spec's "on" list."""

    repositories_matching_query: str = ""
    repository: str = ""
    branch: str = ""

    def __str__(self) -> str:
        if self.repositories_matching_query:
            return self.repositories_matching_query
        if self.branch:
            return f"{self.repository}@{self.branch}"
        return self.repository


class GraphQLClient:
    """A minimal client for the instance's GraphQL endpoint."""

    def __init__(
        self,
        endpoint: str,
        access_token: str = "",
        gzip_requests: bool = False,
        timeout: float | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.access_token = access_token
        self.gzip_requests = gzip_requests
        self.timeout = timeout

    def query(self, query: str, variables: dict | None = None) -> dict:
        """Run a query and return its data; raise GraphQLError on errors."""
        payload = json.dumps({"query": query, "variables": variables or {}}).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"token {self.access_token}"
        if self.gzip_requests:
            payload = gzip.compress(payload)
            headers["Content-Encoding"] = "gzip"
        request = urllib.request.Request(
            self.endpoint + "/.api/graphql", data=payload, headers=headers, method="POST"
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as err:
            text = err.read().decode("utf-8", errors="replace")
            raise RuntimeError(f"error: {err.code} {err.reason}\n\n{text}") from err
        document = json.loads(body)
        data = document.get("data") or {}
        errors = document.get("errors") or []
        if errors:
            raise GraphQLError(errors, data)
        return data


def _quote_meta(text: str) -> str:
    return "".join("\\" + c if c in _REGEX_META else c for c in text)


def _html_escape(text: str) -> str:
    return "".join(_HTML_ESCAPES.get(c, c) for c in text)


def _git_config(attribute: str) -> str | None:
    try:
        completed = subprocess.run(
            ["git", "config", "--get", attribute],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError:
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout.decode("utf-8", errors="replace").strip()


def _parse_repository(data: dict) -> Repository:
    return parse_search_result({**data, "__typename": "Repository"})


@dataclass
class Service:
    """Resolves repositories, namespaces and workspaces for batch specs."""

    client: Any
    allow_unsupported: bool = False
    allow_ignored: bool = False
    allow_optional_published: bool = False

    def create_changeset_spec(self, spec: ChangesetSpec) -> str:
        """Upload a changeset spec and return its ID."""
        raw = json.dumps(spec.to_dict())
        data = self.client.query(_CREATE_CHANGESET_SPEC_MUTATION, {"spec": raw})
        return (data.get("createChangesetSpec") or {}).get("id") or ""

    def validate_changeset_specs(
        self, repos: Iterable[Repository], specs: Iterable[ChangesetSpec]
    ) -> None:
        """Raise if two changeset specs push to one branch of one repository."""
        validate_changeset_specs(repos, specs)

    def determine_workspaces(
        self, repos: Sequence[Repository], spec: BatchSpec
    ) -> list[RepoWorkspace]:
        """Find the workspaces the spec's steps run in."""
        return find_workspaces(spec, self, repos)

    def build_tasks(self, spec: BatchSpec, workspaces: Iterable[RepoWorkspace]) -> list[Task]:
        """One task per workspace."""
        return build_tasks(spec, workspaces)

    def generate_example_spec(self, file_name: str) -> None:
        """Write an example batch spec to file_name, which must not exist yet."""
        try:
            handle = open(file_name, "x", encoding="utf-8")
        except FileExistsError as err:
            raise FileExistsError(f"file {file_name} already exists") from err
        except OSError as err:
            raise OSError(f"failed to create file {file_name}: {err}") from err

        name, email = _DEFAULT_AUTHOR_NAME, _DEFAULT_AUTHOR_EMAIL
        git_name = _git_config("user.name")
        git_email = _git_config("user.email")
        if git_name and git_email:
            name, email = git_name, git_email

        template = _EXAMPLE_SPEC
        if not self.allow_optional_published:
            template += _EXAMPLE_SPEC_PUBLISH_FLAG
        with handle:
            handle.write(
                template.format(author_name=_html_escape(name), author_email=_html_escape(email))
            )

    def resolve_namespace(self, namespace: str) -> str:
        """Return the ID of the named user or organisation, or of the current user."""
        if not namespace:
            try:
                data = self.client.query(_CURRENT_USER_QUERY, None)
            except GraphQLError as err:
                raise RuntimeError(
                    f"failed to resolve namespace: no user logged in: {err}"
                ) from err
            user_id = (data.get("currentUser") or {}).get("id") or ""
            if not user_id:
                raise RuntimeError("cannot resolve current user")
            return user_id

        try:
            data = self.client.query(_NAMESPACE_QUERY, {"name": namespace})
        except GraphQLError as err:
            # A missing user or organisation is reported as an error while
            # the other field may still hold data.
            data = err.data
        for key in ("user", "organization"):
            found = data.get(key)
            if found is not None:
                return found.get("id") or ""
        raise LookupError(
            f'failed to resolve namespace "{namespace}": no user or organization found'
        )

    def resolve_repositories(self, spec: BatchSpec) -> list[Repository]:
        """Resolve every "on" entry of spec to repositories, without duplicates.

        Raises UnsupportedRepositoriesError or IgnoredRepositoriesError, which
        carry the remaining repositories, when some were left out.
        """
        seen: dict[str, Repository] = {}
        unsupported: list[Repository] = []
        ignored: list[Repository] = []

        for on in spec.on:
            repos = [repo for repo in self.resolve_repositories_on(on) if repo.has_branch()]

            batch_ignores: dict[Repository, list[str]] = {}
            if not self.allow_ignored:
                batch_ignores = self.find_directories_in_repos(".batchignore", *repos)

            for repo in repos:
                other = seen.get(repo.id)
                if other is not None:
                    # Keep the latest commit and branch for a repeated repository.
                    other.commit_oid = repo.commit_oid
                    other.branch = repo.branch
                    continue
                seen[repo.id] = repo
                if (
                    repo.service_type.lower() not in _SUPPORTED_SERVICE_TYPES
                    and not self.allow_unsupported
                ):
                    unsupported.append(repo)
                if not self.allow_ignored and batch_ignores.get(repo):
                    ignored.append(repo)

        excluded = {id(repo) for repo in unsupported} | {id(repo) for repo in ignored}
        final = [repo for repo in seen.values() if id(repo) not in excluded]

        if unsupported:
            raise UnsupportedRepositoriesError(unsupported, final)
        if ignored:
            raise IgnoredRepositoriesError(ignored, final)
        return final

    def resolve_repositories_on(self, on: OnQueryOrRepository) -> list[Repository]:
        """Resolve one "on" entry to the repositories it names."""
        if on.repositories_matching_query:
            return self._resolve_repository_search(on.repositories_matching_query)
        if on.repository and on.branch:
            return [self._resolve_repository_name_and_branch(on.repository, on.branch)]
        if on.repository:
            return [self._resolve_repository_name(on.repository)]
        raise MalformedOnError()

    def find_directories_in_repos(
        self, file_name: str, *args: Repository
    ) -> dict[Repository, list[str]]:
        """Map each repository to the directories holding a file named file_name.

        Paths are relative to the repository root; the root itself is "".
        """
        repos = list(args)
        repo_by_alias = {f"repo_{i}": repo for i, repo in enumerate(repos)}
        alias_by_repo = {id(repo): alias for alias, repo in repo_by_alias.items()}

        results: dict[Repository, list[str]] = {}
        for start in range(0, len(repos), FIND_DIRECTORIES_BATCH_SIZE):
            batch = repos[start : start + FIND_DIRECTORIES_BATCH_SIZE]
            parts = ["query DirectoriesContainingFile {\n"]
            for repo in batch:
                search = (
                    f"file:(^|/){_quote_meta(file_name)}$ "
                    f"repo:^{_quote_meta(repo.name)}$@{repo.rev()} type:path count:99999"
                )
                parts.append(
                    _SEARCH_ALIAS_TEMPLATE.format(
                        alias=alias_by_repo[id(repo)], query=json.dumps(search)
                    )
                )
            parts.append("}")

            data = self.client.query("".join(parts), None)
            for alias, search in data.items():
                repo = repo_by_alias.get(alias)
                if repo is None:
                    raise ValueError(f'result for query "{alias}" did not match any repository')
                matches = ((search or {}).get("results") or {}).get("results") or []
                files: dict[str, None] = {}
                for match in matches:
                    for path in sorted(parse_search_result(match).file_matches):
                        files[path] = None
                dirs = []
                for path in files:
                    directory = posixpath.dirname(path)
                    dirs.append("" if directory in (".", "") else directory)
                results[repo] = dirs
        return results

    def _resolve_repository_name(self, name: str) -> Repository:
        data = self.client.query(
            _REPOSITORY_NAME_QUERY, {"name": name, "queryCommit": False, "rev": ""}
        )
        found = data.get("repository")
        if found is None:
            raise LookupError("no repository found")
        return _parse_repository(found)

    def _resolve_repository_name_and_branch(self, name: str, branch: str) -> Repository:
        data = self.client.query(
            _REPOSITORY_NAME_QUERY, {"name": name, "queryCommit": True, "rev": branch}
        )
        found = data.get("repository")
        if found is None:
            raise LookupError("no repository found")
        repo = _parse_repository(found)
        if not repo.commit_oid:
            raise LookupError(f'no branch matching "{branch}" found for repository {name}')
        repo.branch = Branch(name=branch, target_oid=repo.commit_oid)
        return repo

    def _resolve_repository_search(self, query: str) -> list[Repository]:
        data = self.client.query(
            _REPOSITORY_SEARCH_QUERY,
            {"query": set_default_query_count(query), "queryCommit": False, "rev": ""},
        )
        results = (((data.get("search") or {}).get("results") or {}).get("results")) or []
        by_id: dict[str, Repository] = {}
        for result in results:
            repo = parse_search_result(result)
            existing = by_id.get(repo.id)
            if existing is None:
                by_id[repo.id] = repo
            else:
                existing.file_matches |= repo.file_matches
        return list(by_id.values())