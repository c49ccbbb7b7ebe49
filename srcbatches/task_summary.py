"""Status text for executing tasks and summaries of the diffs they produce."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

STYLE_LINES_ADDED = "\x1b[32m"
STYLE_LINES_DELETED = "\x1b[31m"
STYLE_RESET = "\x1b[0m"

_DIAGRAM_MAX_WIDTH = 20
_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


@dataclass
class TaskStatus:
    """What is known about one task while it executes."""

    display_name: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    currently_executing: str = ""
    err: BaseException | None = None

    def finished_execution(self) -> bool:
        """Whether the task has both started and finished."""
        return self.started_at is not None and self.finished_at is not None

    def execution_time(self) -> timedelta:
        """How long the task ran, truncated to milliseconds."""
        if not self.finished_execution():
            return timedelta(0)
        elapsed = self.finished_at - self.started_at
        return timedelta(milliseconds=int(elapsed / timedelta(milliseconds=1)))

    def __str__(self) -> str:
        if self.finished_execution():
            if self.err is None:
                return "Done!"
            status_text = getattr(self.err, "status_text", None)
            if callable(status_text):
                return status_text()
            return str(self.err)
        if self.currently_executing:
            lines = self.currently_executing.split("\n")
            if len(lines) > 1:
                return f"{lines[0]} ..."
            return lines[0]
        return "..."


@dataclass
class DiffStat:
    """Counts of added, changed and deleted lines."""

    added: int = 0
    changed: int = 0
    deleted: int = 0

    def __add__(self, other: "DiffStat") -> "DiffStat":
        return DiffStat(
            self.added + other.added,
            self.changed + other.changed,
            self.deleted + other.deleted,
        )


@dataclass
class FileDiff:
    """The diff of one file: its names, header lines and line counts."""

    orig_name: str = ""
    new_name: str = ""
    extended: list[str] = field(default_factory=list)
    stat: DiffStat = field(default_factory=DiffStat)


def _hunk_stat(body: Iterable[str]) -> DiffStat:
    # A deletion directly next to an addition counts as one changed line.
    stat = DiffStat()
    last = ""
    for line in body:
        if not line:
            last = ""
            continue
        kind = line[0]
        if kind == "-":
            if last == "+":
                stat.added -= 1
                stat.changed += 1
                last = ""
            else:
                stat.deleted += 1
                last = kind
        elif kind == "+":
            if last == "-":
                stat.deleted -= 1
                stat.changed += 1
                last = ""
            else:
                stat.added += 1
                last = kind
        else:
            last = ""
    return stat


def _file_name(header_value: str) -> str:
    return header_value.split("\t", 1)[0]


def _names_from_git_header(line: str) -> tuple[str, str]:
    rest = line[len("diff --git "):] if line.startswith("diff --git ") else ""
    parts = rest.split(" ")
    if len(parts) == 2:
        return parts[0], parts[1]
    half = len(rest) // 2
    return rest[:half], rest[half + 1:]


def parse_multi_file_diff(text) -> list[FileDiff]:
    """Parse a unified diff covering any number of files."""
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    diffs: list[FileDiff] = []
    current: FileDiff | None = None
    seen_new_name = False
    has_hunks = False
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if line.startswith("diff "):
            current = FileDiff()
            current.orig_name, current.new_name = _names_from_git_header(line)
            current.extended.append(line)
            diffs.append(current)
            seen_new_name = has_hunks = False
        elif line.startswith("--- ") and (current is None or seen_new_name or has_hunks):
            current = FileDiff(orig_name=_file_name(line[4:]))
            diffs.append(current)
            seen_new_name = has_hunks = False
        elif line.startswith("--- ") and current is not None:
            current.orig_name = _file_name(line[4:])
        elif line.startswith("+++ ") and current is not None and not has_hunks:
            current.new_name = _file_name(line[4:])
            seen_new_name = True
        elif line.startswith("@@"):
            if current is None:
                raise ValueError(f"hunk outside of a file diff: {line!r}")
            match = _HUNK_HEADER.match(line)
            if match is None:
                raise ValueError(f"malformed hunk header: {line!r}")
            orig_left = int(match.group(2) or 1)
            new_left = int(match.group(4) or 1)
            body = []
            while orig_left > 0 or new_left > 0:
                if i >= len(lines):
                    raise ValueError(f"unexpected end of hunk in {current.new_name!r}")
                body_line = lines[i]
                i += 1
                kind = body_line[:1]
                if kind == "\\":
                    pass
                elif kind == "-":
                    orig_left -= 1
                elif kind == "+":
                    new_left -= 1
                elif kind in (" ", ""):
                    orig_left -= 1
                    new_left -= 1
                else:
                    raise ValueError(f"malformed hunk line: {body_line!r}")
                body.append(body_line)
            while i < len(lines) and lines[i].startswith("\\"):
                body.append(lines[i])
                i += 1
            current.stat = current.stat + _hunk_stat(body)
            has_hunks = True
        elif current is not None and not has_hunks:
            current.extended.append(line)
        elif line.strip():
            raise ValueError(f"unexpected line in diff: {line!r}")
    return diffs


def diff_display_name(file_diff: FileDiff) -> str:
    """The name to show for a file diff; the old name if the file was deleted."""
    if file_diff.new_name == "/dev/null":
        return file_diff.orig_name
    return file_diff.new_name


def diff_stat_description(file_diffs: Sequence[FileDiff]) -> str:
    """A line such as "3 files changed"."""
    plural = "s" if len(file_diffs) > 1 else ""
    return f"{len(file_diffs)} file{plural} changed"


def diff_stat_diagram(stat: DiffStat) -> str:
    """A coloured bar of plus and minus signs at most 20 wide."""
    added = float(stat.added + stat.changed)
    deleted = float(stat.deleted + stat.changed)
    total = added + deleted
    if total > _DIAGRAM_MAX_WIDTH:
        scale = _DIAGRAM_MAX_WIDTH / total
        added *= scale
        deleted *= scale
    return (
        f"{STYLE_LINES_ADDED}{'+' * int(added)}"
        f"{STYLE_LINES_DELETED}{'-' * int(deleted)}"
        f"{STYLE_RESET}"
    )


def verbose_diff_summary(file_diffs: Sequence[FileDiff]) -> list[str]:
    """Lines summarising the diffs, one per file and a closing total."""
    file_stats: dict[str, str] = {}
    names: list[str] = []
    sum_insertions = 0
    sum_deletions = 0
    for file_diff in file_diffs:
        name = diff_display_name(file_diff)
        names.append(name)
        stat = file_diff.stat
        sum_insertions += stat.added + stat.changed
        sum_deletions += stat.deleted + stat.changed
        num = stat.added + 2 * stat.changed + stat.deleted
        file_stats[name] = f"{num} {diff_stat_diagram(stat)}"

    width = max((len(name) for name in names), default=0)
    lines = [f"\t{name:<{width}} | {file_stats[name]}" for name in sorted(names)]

    insertions_plural = "s" if sum_insertions != 0 else ""
    deletions_plural = "s" if sum_deletions != 1 else ""
    lines.append(
        f"  {diff_stat_description(file_diffs)}, "
        f"{sum_insertions} insertion{insertions_plural}, "
        f"{sum_deletions} deletion{deletions_plural}"
    )
    return lines


@dataclass
class StepsStatusReporter:
    """Reports the progress of a task's steps as a one-line status."""

    update_status_bar: Callable[[str], None]

    def archive_download_started(self) -> None:
        self.update_status_bar("Downloading archive")

    def workspace_initialization_started(self) -> None:
        self.update_status_bar("Initializing workspace")

    def skipping_steps_upto(self, start_step: int) -> None:
        if start_step == 1:
            self.update_status_bar("Skipping step 1. Found cached result.")
        else:
            self.update_status_bar(
                f"Skipping steps 1 to {start_step}. Found cached results."
            )

    def step_skipped(self, step: int) -> None:
        self.update_status_bar(f"Skipping step {step}")

    def step_preparing_start(self, step: int) -> None:
        self.update_status_bar(f"Preparing {step}")

    def step_started(self, step: int, run_script: str, env) -> None:
        self.update_status_bar(run_script)

    def calculating_diff_started(self) -> None:
        self.update_status_bar("Calculating diff")