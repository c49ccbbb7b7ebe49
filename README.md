# srcbatches

A library for running one set of steps across many repositories. It covers
these jobs:

- resolving which repositories a batch spec targets, through a GraphQL
  endpoint (`srcbatches.service`)
- splitting repositories into workspaces and choosing the steps that apply
  to each one (`srcbatches.workspaces`)
- preparing a workspace in a host directory or a Docker volume, and reading
  back its changes and diff (`srcbatches.bind_workspace`,
  `srcbatches.volume_workspace`, `srcbatches.creators`)
- helpers for progress output: batched step output and short diff summaries
  (`srcbatches.interval_writer`, `srcbatches.task_summary`)

## Installation

```
pip install srcbatches
```

To run the tests:

```
pip install "srcbatches[test]"
pytest
```

The package has no third-party dependencies. Workspaces call `git` and,
in volume mode, `docker`, so both must be on `PATH`.

## Resolving repositories

```python
from srcbatches.service import GraphQLClient, OnQueryOrRepository, Service
from srcbatches.workspaces import BatchSpec

client = GraphQLClient("https://sourcegraph.example.com", access_token="token")
svc = Service(client=client)

spec = BatchSpec(name="hello", on=[OnQueryOrRepository(repositories_matching_query="file:README.md")])
repos = svc.resolve_repositories(spec)
```

`GraphQLClient.query(query, variables)` POSTs to `<endpoint>/.api/graphql`,
returns the `data` object, and raises `GraphQLError` when the response holds
errors. You can pass any object with the same `query` method as `client`.

If a search query has no `count:` filter, `count:999999` is added to it
(`srcbatches.query.set_default_query_count`). Repositories without a branch
are dropped, and a repository found more than once appears only once. A
repository on a code host other than GitHub, GitLab or Bitbucket Server
raises `UnsupportedRepositoriesError`, unless `allow_unsupported=True`. A
repository that contains a `.batchignore` file raises
`IgnoredRepositoriesError`, unless `allow_ignored=True`. Both errors list the
skipped repositories and keep the remaining ones in `.repositories`.

`Service` has these other methods:

- `resolve_namespace(name)`: the ID of a user or organisation. With an
  empty name it returns the ID of the current user.
- `find_directories_in_repos(file_name, *repos)`: the directories in each
  repository that contain the file. The repository root is `""`.
- `create_changeset_spec(spec)`: uploads a changeset spec and returns its ID.
- `generate_example_spec(file_name)`: writes an example batch spec. It
  refuses to overwrite an existing file, and fills in the author from
  `git config` when that is set.

## Planning workspaces and tasks

```python
from srcbatches.workspaces import BatchSpec, Step, WorkspaceConfiguration, build_tasks, find_workspaces

spec = BatchSpec(
    name="hello",
    steps=[Step(run="echo hello >> README.md", container="alpine:3")],
    workspaces=[WorkspaceConfiguration(in_glob="*monorepo", root_at_location_of="package.json")],
)
workspaces = svc.determine_workspaces(repos, spec)   # or find_workspaces(spec, svc, repos)
tasks = build_tasks(spec, workspaces)
```

A repository that no `in_glob` matches gets one workspace at its root. A
repository that matches a glob gets one workspace for each directory that
holds the `root_at_location_of` file. If a repository matches two globs,
`ValidationError` is raised.

A step can have a `condition` such as
`${{ matches repository.name "github.com/example/*" }}`. `steps_for_repo`
leaves out a step when its condition can be worked out before execution and
comes out false. Conditions that refer to `outputs`, `step`, `steps` or
`previous_step` cannot be worked out early, so those steps are always kept.

## Preparing a workspace

```python
from srcbatches.creators import new_creator
from srcbatches.workspace import Archive

creator = new_creator("bind", cache_dir, temp_dir, images)
with creator.create(repo, steps, Archive(path="repo.zip")) as workspace:
    print(workspace.changes())
    print(workspace.diff().decode())
```

The preference `"bind"` unzips the archive into a directory under
`cache_dir`. The preference `"volume"` unzips it into a fresh Docker volume.
With any other preference, `best_creator_type` decides: it picks volume mode
only on Intel macOS, and only when every image in `images` runs as the same
user.

## Progress helpers

- `IntervalProcessWriter(sink, interval=0.5)` gives you
  `stdout_writer()` and `stderr_writer()`. These prefix every line with
  `stdout: ` or `stderr: `, and the buffered text goes to `sink` once per
  interval and again on `close()`.
- `parse_multi_file_diff(text)` and `verbose_diff_summary(file_diffs)` turn
  a unified diff into lines like `README.md | 3 +++`, followed by a total
  line.
- `TaskStatus` and `StepsStatusReporter` produce the one-line status text
  for a running task.

## Checking changeset specs

`srcbatches.query.validate_changeset_specs(repos, specs)` raises
`DuplicateBranchesError` when two changeset specs would push to the same
branch of one repository. Imported changesets are not checked.

## What this package does not do

- There is no command-line program.
- Nothing here runs steps in containers or builds changeset specs from their
  results.
- There is no terminal progress display or JSON event log. The progress
  helpers only produce text and status lines for your own display.
- Images are not pulled. Volume workspaces and `best_creator_type` take
  image objects that you supply, which must have a `uid_gid()` method.