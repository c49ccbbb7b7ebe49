"""Workspaces in which batch change steps run, and how to pick their kind."""

from __future__ import annotations

import enum
import platform
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Mapping, Protocol

from .gitcmd import Changes
from .repo import Repository


class CreatorType(enum.IntEnum):
    """The kind of workspace a creator makes."""

    BIND = 0
    VOLUME = 1


@dataclass(frozen=True)
class UIDGID:
    """The user and group a container runs as."""

    uid: int = 0
    gid: int = 0

    def __str__(self) -> str:
        return f"{self.uid}:{self.gid}"


ROOT = UIDGID(0, 0)


class _Image(Protocol):
    def uid_gid(self) -> UIDGID: ...


@dataclass
class Archive:
    """A downloaded repository archive and extra files to place beside it."""

    path: str
    additional_file_paths: dict[str, str] = field(default_factory=dict)


class Workspace(ABC):
    """Per-changeset storage used while executing steps."""

    @abstractmethod
    def docker_run_opts(self, target: str) -> list[str]:
        """Options for ``docker run`` that make the workspace available."""

    @abstractmethod
    def work_dir(self) -> str | None:
        """The host working directory, or None if there is none."""

    @abstractmethod
    def close(self) -> None:
        """Delete the workspace."""

    @abstractmethod
    def changes(self) -> Changes:
        """Cumulative file changes since the workspace was prepared."""

    @abstractmethod
    def diff(self) -> bytes:
        """The total diff of the workspace."""

    @abstractmethod
    def apply_diff(self, diff: bytes) -> None:
        """Apply the given diff to the workspace."""

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Creator(ABC):
    """Makes workspaces for repositories."""

    @abstractmethod
    def create(self, repo: Repository, steps, archive: Archive) -> Workspace:
        """Create a workspace for repo from the given archive."""

    @property
    @abstractmethod
    def type(self) -> CreatorType:
        """The kind of workspace this creator makes."""


def best_creator_type(images: Mapping[str, _Image] | None) -> CreatorType:
    """Pick the workspace kind for this platform and these images.

    Volumes are only considered on Intel macOS, where bind mounts are slow.
    """
    if sys.platform != "darwin" or platform.machine() != "x86_64":
        return CreatorType.BIND
    return detect_best_creator_type(images)


def detect_best_creator_type(images: Mapping[str, _Image] | None) -> CreatorType:
    """Use volumes unless the images run as more than one user.

    An image whose user cannot be determined makes the safe bind choice.
    """
    uid = None
    for image in (images or {}).values():
        try:
            ug = image.uid_gid()
        except Exception:
            return CreatorType.BIND
        if uid is None:
            uid = ug.uid
        elif uid != ug.uid:
            return CreatorType.BIND
    return CreatorType.VOLUME