"""
Artifact variants produced by a task run.

Only artifacts that implement HashableArtifact are backed by on-disk content
and appear in the chain of trust certificate. Redirects and error markers
are published but never hashed.
"""

import mimetypes
import os
import posixpath
from abc import ABC
from dataclasses import dataclass
from typing import BinaryIO, Iterable, List, Optional, Sequence

from .errors import ArtifactPathError, ReservedArtifactError
from .logging_config import audit_log
from .util import open_no_follow

DEFAULT_CONTENT_TYPE = "application/octet-stream"

FILE_MISSING = "file-missing-on-worker"
INVALID_RESOURCE = "invalid-resource-on-worker"


@dataclass(frozen=True)
class Artifact:
    """Base for everything a run publishes."""
    name: str
    expires: Optional[str] = None


class HashableArtifact(ABC):
    """
    Capability: the artifact has content on disk.

    Implementations expose `path`, relative to the run's task directory.
    """
    path: str


@dataclass(frozen=True)
class FileArtifact(Artifact, HashableArtifact):
    """A file uploaded from the task directory."""
    path: str = ""
    content_type: str = DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class RedirectArtifact(Artifact):
    """A pointer to content hosted elsewhere."""
    url: str = ""
    content_type: str = "text/plain; charset=utf-8"


@dataclass(frozen=True)
class ErrorArtifact(Artifact):
    """Marks a declared artifact the run failed to produce."""
    path: str = ""
    message: str = ""
    reason: str = FILE_MISSING


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or DEFAULT_CONTENT_TYPE


def check_reserved_names(names: Iterable[str], reserved: Sequence[str], task_id: str = "") -> None:
    """
    Reject any artifact name owned by a worker feature.

    Raises:
        ReservedArtifactError: On the first collision
    """
    reserved_set = set(reserved)
    for name in names:
        if name in reserved_set:
            audit_log.reserved_artifact_rejected(task_id, name)
            raise ReservedArtifactError(name)


def task_path_parts(path: str) -> List[str]:
    """
    Split an artifact path into components below the task directory.

    Raises:
        ArtifactPathError: If the path is empty, absolute or climbs out with ".."
    """
    if not path or os.path.isabs(path):
        raise ArtifactPathError(path)
    parts = [part for part in os.path.normpath(path).split(os.sep) if part != "."]
    if ".." in parts:
        raise ArtifactPathError(path)
    return parts


def check_artifact_paths(declarations: Iterable, task_id: str = "") -> None:
    """
    Reject declarations whose path cannot name anything in the task directory.

    Raises:
        ArtifactPathError: On the first offending path
    """
    for decl in declarations:
        try:
            task_path_parts(decl.path)
        except ArtifactPathError:
            audit_log.artifact_path_rejected(task_id, decl.name or decl.path, decl.path)
            raise


def open_task_file(task_dir: str, path: str) -> BinaryIO:
    """
    Open a file beneath the task directory for reading.

    Every component of path is opened relative to its parent with
    O_NOFOLLOW, so the file is never reached through a symlink, however the
    task rearranged its directory after the artifacts were resolved.

    Raises:
        ArtifactPathError: If path leaves the task directory
        OSError: If the file is missing, not a regular file or behind a symlink
    """
    parts = task_path_parts(path)
    if not parts:
        raise IsADirectoryError(path)
    dir_fd = os.open(task_dir, os.O_RDONLY | os.O_DIRECTORY)
    try:
        for part in parts[:-1]:
            next_fd = os.open(part, os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW, dir_fd=dir_fd)
            os.close(dir_fd)
            dir_fd = next_fd
        return open_no_follow(parts[-1], dir_fd=dir_fd)
    finally:
        os.close(dir_fd)


def _contained_path(root: str, path: str) -> Optional[str]:
    """Symlink-free form of path relative to root, or None if it lies outside root."""
    real = os.path.realpath(path)
    if real != root and not real.startswith(root.rstrip(os.sep) + os.sep):
        return None
    return os.path.relpath(real, root)


def _resolve_file(
    root: str,
    declared: str,
    name: str,
    expires: Optional[str],
    content_type: Optional[str],
    task_id: str,
) -> Artifact:
    full_path = os.path.join(root, declared)
    contained = _contained_path(root, full_path)
    if contained is None:
        audit_log.artifact_path_rejected(task_id, name, declared)
        return ErrorArtifact(
            name=name,
            expires=expires,
            path=declared,
            message=f"Artifact '{declared}' resolves outside the task directory",
            reason=INVALID_RESOURCE,
        )
    if not os.path.isfile(full_path):
        return ErrorArtifact(
            name=name,
            expires=expires,
            path=declared,
            message=f"Could not read file '{full_path}'",
        )
    return FileArtifact(
        name=name,
        expires=expires,
        path=contained,
        content_type=content_type or guess_content_type(declared),
    )


def resolve_declared_artifacts(declarations: Iterable, task_dir: str, task_id: str = "") -> List[Artifact]:
    """
    Turn payload artifact declarations into concrete artifacts.

    A "file" declaration becomes a FileArtifact, or an ErrorArtifact when the
    file is missing. A "directory" declaration expands to one artifact per
    file beneath it, named under the declared name. Anything that resolves
    outside the task directory, through a symlink or otherwise, becomes an
    ErrorArtifact and is never read.

    Args:
        declarations: Objects with type, path, name, expires and content_type attributes
        task_dir: The run's task directory
        task_id: For audit records

    Returns:
        Artifacts in declaration order. FileArtifact paths are symlink-free
        and relative to the task directory.

    Raises:
        ArtifactPathError: If a declared path is absolute or climbs out with ".."
    """
    root = os.path.realpath(task_dir)
    resolved: List[Artifact] = []
    for decl in declarations:
        task_path_parts(decl.path)
        name = decl.name or decl.path

        if decl.type != "directory":
            resolved.append(_resolve_file(root, decl.path, name, decl.expires, decl.content_type, task_id))
            continue

        contained = _contained_path(root, os.path.join(root, decl.path))
        if contained is None:
            audit_log.artifact_path_rejected(task_id, name, decl.path)
            resolved.append(ErrorArtifact(
                name=name,
                expires=decl.expires,
                path=decl.path,
                message=f"Artifact '{decl.path}' resolves outside the task directory",
                reason=INVALID_RESOURCE,
            ))
            continue
        directory = os.path.join(root, contained)
        if not os.path.isdir(directory):
            resolved.append(ErrorArtifact(
                name=name,
                expires=decl.expires,
                path=decl.path,
                message=f"Could not read directory '{directory}'",
            ))
            continue
        for dirpath, dirs, files in os.walk(directory):
            dirs.sort()
            for filename in sorted(files):
                entry = os.path.join(dirpath, filename)
                rel_to_decl = os.path.relpath(entry, directory).replace(os.sep, "/")
                resolved.append(_resolve_file(
                    root,
                    os.path.relpath(entry, root),
                    posixpath.join(name, rel_to_decl),
                    decl.expires,
                    None,
                    task_id,
                ))
    return resolved
