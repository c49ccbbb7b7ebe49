"""Matching repositories to workspaces and the steps that run in them."""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, Sequence

from .repo import Repository, TemplatingRepo, new_templating_repo

# Template roots whose values are only known while steps execute.
_NON_STATIC_ROOTS = frozenset({"outputs", "step", "steps", "previous_step"})

_EXPRESSION = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)
_LEXEME_PATTERN = re.compile(
    r"(?P<space>\s+)"
    r'|(?P<str>"(?:\\.|[^"\\])*")'
    r"|(?P<raw>`[^`]*`)"
    r"|(?P<punct>[()|])"
    r"|(?P<num>-?\d+)"
    r"|(?P<ident>\.?[A-Za-z_][A-Za-z0-9_.]*)"
)


class ValidationError(ValueError):
    """The batch spec is not valid for the repositories it targets."""


@dataclass
class Step:
    """One step of a batch spec: a script run in a container."""

    run: str = ""
    container: str = ""
    env: dict[str, str] = field(default_factory=dict)
    condition: str = ""


@dataclass(frozen=True)
class WorkspaceConfiguration:
    """Where in matching repositories separate workspaces are rooted."""

    root_at_location_of: str = ""
    in_glob: str = ""
    only_fetch_workspace: bool = False


@dataclass
class BatchSpec:
    """The parts of a batch spec that decide what runs where."""

    name: str = ""
    description: str = ""
    on: list = field(default_factory=list)
    workspaces: list[WorkspaceConfiguration] = field(default_factory=list)
    steps: list[Step] = field(default_factory=list)
    transform_changes: Any = None
    changeset_template: Any = None


@dataclass
class RepoWorkspace:
    """A repository and the path inside it where steps run."""

    repo: Repository
    path: str = ""
    steps: list[Step] = field(default_factory=list)
    only_fetch_workspace: bool = False


@dataclass(eq=False)
class Task:
    """Everything needed to execute the steps in one workspace."""

    repository: Repository
    path: str = ""
    steps: list[Step] = field(default_factory=list)
    only_fetch_workspace: bool = False
    transform_changes: Any = None
    template: Any = None
    batch_change_name: str = ""
    batch_change_description: str = ""


class DirectoryFinder(Protocol):
    def find_directories_in_repos(
        self, file_name: str, *repos: Repository
    ) -> dict[Repository, list[str]]: ...


# ---------------------------------------------------------------------------
# Globs


def _compile_glob(pattern: str) -> re.Pattern:
    """Compile a glob with *, ?, [classes] and {alternatives}; no separators."""
    out: list[str] = []
    depth = 0
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "\\":
            i += 1
            if i >= len(pattern):
                raise ValueError("unexpected end of pattern after escape")
            out.append(re.escape(pattern[i]))
        elif c == "*":
            while i + 1 < len(pattern) and pattern[i + 1] == "*":
                i += 1
            out.append(".*")
        elif c == "?":
            out.append(".")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end < 0:
                raise ValueError("unclosed character class")
            body = pattern[i + 1 : end]
            negate = body.startswith("!")
            if negate:
                body = body[1:]
            if not body:
                raise ValueError("empty character class")
            chars = "".join(ch if ch == "-" else re.escape(ch) for ch in body)
            out.append("[" + ("^" if negate else "") + chars + "]")
            i = end
        elif c == "{":
            depth += 1
            out.append("(?:")
        elif c == "," and depth:
            out.append("|")
        elif c == "}" and depth:
            depth -= 1
            out.append(")")
        else:
            out.append(re.escape(c))
        i += 1
    if depth:
        raise ValueError("unclosed alternation")
    try:
        return re.compile("".join(out), re.DOTALL)
    except re.error as err:
        raise ValueError(str(err)) from err


# ---------------------------------------------------------------------------
# Static evaluation of step conditions


def _fn_matches(value, pattern):
    return _compile_glob(str(pattern)).fullmatch(_render(value)) is not None


def _fn_and(*args):
    if not args:
        raise ValueError("wrong number of args for and")
    for arg in args:
        if not arg:
            return arg
    return args[-1]


def _fn_or(*args):
    if not args:
        raise ValueError("wrong number of args for or")
    for arg in args:
        if arg:
            return arg
    return args[-1]


def _fn_eq(first, *others):
    if not others:
        raise ValueError("missing argument for comparison")
    return any(first == other for other in others)


_FUNCTIONS = {
    "matches": _fn_matches,
    "eq": _fn_eq,
    "ne": lambda a, b: a != b,
    "not": lambda a: not a,
    "and": _fn_and,
    "or": _fn_or,
    "len": len,
    "join": lambda items, sep: sep.join(_render(i) for i in items),
    "split": lambda s, sep: s.split(sep),
    "replace": lambda s, old, new: s.replace(old, new),
}


def _tokenize(text: str) -> list[tuple[str, str]]:
    lexemes = []
    pos = 0
    while pos < len(text):
        match = _LEXEME_PATTERN.match(text, pos)
        if match is None:
            raise ValueError(f"unexpected character {text[pos]!r} in expression")
        if match.lastgroup != "space":
            lexemes.append((match.lastgroup, match.group()))
        pos = match.end()
    return lexemes


class _Parser:
    def __init__(self, text: str):
        self._lexemes = _tokenize(text)
        self._pos = 0

    def parse(self):
        node = self._pipeline()
        if self._pos != len(self._lexemes):
            raise ValueError(f"unexpected {self._lexemes[self._pos][1]!r} in expression")
        return node

    def _peek(self) -> str | None:
        if self._pos < len(self._lexemes):
            return self._lexemes[self._pos][1]
        return None

    def _pipeline(self):
        commands = [self._command()]
        while self._peek() == "|":
            self._pos += 1
            commands.append(self._command())
        return ("pipe", commands)

    def _command(self):
        operands = []
        while self._peek() not in (None, ")", "|"):
            operands.append(self._operand())
        if not operands:
            raise ValueError("missing value for command")
        first = operands[0]
        if first[0] == "func":
            return ("call", first[1], operands[1:])
        if len(operands) > 1:
            raise ValueError("can't give argument to non-function")
        return first

    def _operand(self):
        kind, text = self._lexemes[self._pos]
        self._pos += 1
        if kind == "str":
            return ("lit", ast.literal_eval(text))
        if kind == "raw":
            return ("lit", text[1:-1])
        if kind == "num":
            return ("lit", int(text))
        if text == "(":
            inner = self._pipeline()
            if self._peek() != ")":
                raise ValueError("unclosed parenthesis in expression")
            self._pos += 1
            return inner
        if kind == "punct":
            raise ValueError(f"unexpected {text!r} in expression")
        if text in ("true", "false"):
            return ("lit", text == "true")
        if text == "nil":
            return ("lit", None)
        if not text.startswith(".") and text in _FUNCTIONS:
            return ("func", text)
        if "." not in text.lstrip(".") and text.lstrip(".") not in _NON_STATIC_ROOTS | {
            "repository",
            "batch_change",
        }:
            raise ValueError(f'function "{text}" not defined')
        return ("field", text.lstrip(".").split("."))


def _is_static(node) -> bool:
    kind = node[0]
    if kind == "field":
        return node[1][0] not in _NON_STATIC_ROOTS
    if kind == "pipe":
        return all(_is_static(cmd) for cmd in node[1])
    if kind == "call":
        return all(_is_static(arg) for arg in node[2])
    return True


def _evaluate_node(node, context: dict, piped=None, has_piped=False):
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "func":
        return _FUNCTIONS[node[1]]()
    if kind == "field":
        value: Any = context
        for part in node[1]:
            if not isinstance(value, dict) or part not in value:
                raise ValueError(f"unknown field {'.'.join(node[1])}")
            value = value[part]
        return value
    if kind == "call":
        args = [_evaluate_node(arg, context) for arg in node[2]]
        if has_piped:
            args.append(piped)
        try:
            return _FUNCTIONS[node[1]](*args)
        except TypeError as err:
            raise ValueError(f"calling {node[1]}: {err}") from err
    value = None
    for index, command in enumerate(node[1]):
        if index > 0 and command[0] != "call":
            raise ValueError("non-function in pipeline")
        value = _evaluate_node(command, context, value, index > 0)
    return value


def _render(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<no value>"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_render(v) for v in value) + "]"
    return str(value)


def _evaluate(condition: str, repo: TemplatingRepo, name: str, description: str):
    parts = _EXPRESSION.split(condition)
    literals = parts[0::2]
    if any("${{" in literal for literal in literals):
        raise ValueError("unclosed action in template")
    expressions = [_Parser(text).parse() for text in parts[1::2]]
    if not all(_is_static(expr) for expr in expressions):
        return False, False

    context = {
        "repository": {
            "name": repo.name,
            "search_result_paths": list(repo.file_matches),
        },
        "batch_change": {"name": name, "description": description},
    }
    rendered = [literals[0]]
    for expr, literal in zip(expressions, literals[1:]):
        rendered.append(_render(_evaluate_node(expr, context)))
        rendered.append(literal)
    return True, "".join(rendered).strip() == "true"


def evaluate_static_condition(condition: str, repo: TemplatingRepo) -> tuple[bool, bool]:
    """Try to evaluate a step condition before any step has run.

    Returns (static, value): static is False when the condition depends on
    values that only exist during execution.
    """
    return _evaluate(condition, repo, "", "")


# ---------------------------------------------------------------------------
# Workspaces and tasks


def steps_for_repo(spec: BatchSpec, repo: TemplatingRepo) -> list[Step]:
    """The steps of spec that may run in repo, dropping statically false ones."""
    steps = []
    for step in spec.steps:
        if not step.condition:
            steps.append(step)
            continue
        static, value = _evaluate(step.condition, repo, spec.name, spec.description)
        if not static or value:
            steps.append(step)
    return steps


def find_workspaces(
    spec: BatchSpec, finder: DirectoryFinder, repos: Sequence[Repository]
) -> list[RepoWorkspace]:
    """Match repos to the spec's workspace configurations and locate workspaces.

    Repositories matched by no configuration get a single workspace at their
    root; matched repositories without any located directory are dropped.
    """
    matchers = []
    for conf in spec.workspaces:
        try:
            matchers.append(_compile_glob(conf.in_glob))
        except ValueError as err:
            raise ValidationError(f'failed to compile glob "{conf.in_glob}": {err}') from err

    root: list[Repository] = []
    matched: dict[int, list[Repository]] = {}
    for repo in repos:
        found = False
        for idx, (conf, matcher) in enumerate(zip(spec.workspaces, matchers)):
            if matcher.fullmatch(repo.name) is None:
                continue
            if found:
                raise ValidationError(
                    f"repository {repo.name} matches multiple workspaces.in globs "
                    f'in the batch spec. glob: "{conf.in_glob}"'
                )
            matched.setdefault(idx, []).append(repo)
            found = True
        if not found:
            root.append(repo)

    by_id: dict[str, tuple[Repository, list[str], bool]] = {}
    for idx in sorted(matched):
        conf = spec.workspaces[idx]
        found_dirs = finder.find_directories_in_repos(conf.root_at_location_of, *matched[idx])
        for repo, dirs in found_dirs.items():
            if dirs:
                by_id[repo.id] = (repo, list(dirs), conf.only_fetch_workspace)

    for repo in root:
        by_id.setdefault(repo.id, (repo, [""], False))

    workspaces = []
    for repo, paths, only_fetch in by_id.values():
        steps = steps_for_repo(spec, new_templating_repo(repo.name, repo.file_matches))
        if not steps:
            continue
        for path in paths:
            workspaces.append(
                RepoWorkspace(
                    repo=repo,
                    path=path,
                    steps=list(steps),
                    only_fetch_workspace=only_fetch and path != "",
                )
            )

    workspaces.sort(key=lambda w: (w.repo.name, w.path))
    return workspaces


def build_tasks(spec: BatchSpec, workspaces: Iterable[RepoWorkspace]) -> list[Task]:
    """One task for every workspace, carrying the spec's change settings."""
    return [
        Task(
            repository=ws.repo,
            path=ws.path,
            steps=ws.steps,
            only_fetch_workspace=ws.only_fetch_workspace,
            transform_changes=spec.transform_changes,
            template=spec.changeset_template,
            batch_change_name=spec.name,
            batch_change_description=spec.description,
        )
        for ws in workspaces
    ]