"""
Chain of Trust Artifact Hashing

Every artifact backed by on-disk content is digested with SHA-256 before the
certificate is built. Files are streamed in fixed-size chunks.

A digest that cannot be computed aborts certification for the run: an
attestation with a missing entry would misrepresent what the task produced.
"""

import hashlib
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, Union

from .artifacts import Artifact, HashableArtifact, open_task_file
from .errors import ArtifactPathError, InternalWorkerError
from .logging_config import audit_log

ALGORITHM = "sha256"
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ArtifactDigest:
    """Content digest of a single artifact."""
    value: str
    algorithm: str = ALGORITHM

    def to_dict(self) -> Dict[str, str]:
        return {self.algorithm: self.value}


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as lowercase hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def hash_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> ArtifactDigest:
    """Digest everything left to read in a binary stream."""
    hasher = hashlib.sha256()
    for chunk in iter(lambda: stream.read(chunk_size), b""):
        hasher.update(chunk)
    return ArtifactDigest(value=hasher.hexdigest())


def hash_file(path: str, chunk_size: int = CHUNK_SIZE) -> ArtifactDigest:
    """
    Stream a file through SHA-256.

    Raises:
        InternalWorkerError: If the file cannot be opened or read
    """
    try:
        with open(path, "rb") as f:
            return hash_stream(f, chunk_size)
    except OSError as e:
        raise InternalWorkerError(f"Could not hash artifact file {path}", str(e)) from e


def hash_artifacts(artifacts: Iterable[Artifact], task_dir: str) -> Dict[str, ArtifactDigest]:
    """
    Digest every hashable artifact of a run.

    Files are opened beneath task_dir without following symlinks.

    Args:
        artifacts: All artifacts the run produced
        task_dir: The run's working directory; artifact paths are relative to it

    Returns:
        Mapping of artifact name to digest. Non-hashable artifacts are skipped.

    Raises:
        InternalWorkerError: On any I/O failure, or a duplicate artifact name
    """
    digests: Dict[str, ArtifactDigest] = {}
    for artifact in artifacts:
        if not isinstance(artifact, HashableArtifact):
            continue
        if artifact.name in digests:
            raise InternalWorkerError("Duplicate artifact name", artifact.name)
        try:
            with open_task_file(task_dir, artifact.path) as f:
                digest = hash_stream(f)
        except (OSError, ArtifactPathError) as e:
            raise InternalWorkerError(f"Could not hash artifact {artifact.name}", str(e)) from e
        audit_log.artifact_hashed(artifact.name, digest.value)
        digests[artifact.name] = digest
    return digests
