"""Splitting slash-separated paths into typed components."""

from __future__ import annotations

import enum
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Union

from cloud_drive.errors import BadPathError

PathLike = Union[str, "os.PathLike[str]", Sequence[str]]

SEPARATOR = "/"
CURRENT_DIR = "."
PARENT_DIR = ".."


class ComponentKind(enum.Enum):
    ROOT = "root"
    CURRENT = "current"
    PARENT = "parent"
    NAME = "name"


@dataclass(frozen=True)
class Component:
    kind: ComponentKind
    name: str = ""


def _classify(part: str) -> Component:
    if part == SEPARATOR:
        return Component(ComponentKind.ROOT)
    if part == CURRENT_DIR:
        return Component(ComponentKind.CURRENT)
    if part == PARENT_DIR:
        return Component(ComponentKind.PARENT)
    if SEPARATOR in part or "\x00" in part:
        raise BadPathError(f"Invalid path component: {part!r}")
    try:
        part.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise BadPathError(f"Path component is not portable: {part!r}") from exc
    return Component(ComponentKind.NAME, part)


def split_path(path: PathLike) -> list[Component]:
    """Return the components of ``path`` from left to right.

    A string (or path object) is split on ``/``; a leading slash yields a
    ROOT component and empty segments are skipped. Any other sequence is
    taken as already-split components, where ``"/"`` marks the root.

    Raises:
        BadPathError: A component cannot be represented as portable text.
    """
    if isinstance(path, os.PathLike):
        path = os.fspath(path)
    if isinstance(path, bytes):
        raise BadPathError("Byte paths are not supported")
    components: list[Component] = []
    if isinstance(path, str):
        if path.startswith(SEPARATOR):
            components.append(Component(ComponentKind.ROOT))
        parts: Sequence[str] = path.split(SEPARATOR)
    else:
        parts = path
    for part in parts:
        if not isinstance(part, str):
            raise BadPathError(f"Invalid path component: {part!r}")
        if part:
            components.append(_classify(part))
    return components
