"""Choosing and building the workspace creator for a run."""

from __future__ import annotations

from typing import Mapping

from .bind_workspace import BindWorkspaceCreator
from .volume_workspace import VolumeWorkspaceCreator
from .workspace import Creator, CreatorType, best_creator_type


def new_creator(preference: str, cache_dir: str, temp_dir: str, images: Mapping) -> Creator:
    """Return a creator for the preferred workspace kind.

    "volume" and "bind" are honoured as given; anything else lets the
    platform and the images decide.
    """
    images = dict(images or {})
    if preference == "volume":
        kind = CreatorType.VOLUME
    elif preference == "bind":
        kind = CreatorType.BIND
    else:
        kind = best_creator_type(images)

    def ensure_image(container: str):
        try:
            return images[container]
        except KeyError:
            raise LookupError(f'image "{container}" not found') from None

    if kind == CreatorType.VOLUME:
        return VolumeWorkspaceCreator(temp_dir=temp_dir, ensure_image=ensure_image)
    return BindWorkspaceCreator(directory=cache_dir)