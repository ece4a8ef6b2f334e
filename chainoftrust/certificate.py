"""
Chain of Trust Certificate

The attestation binds a task run to the worker that executed it:

- the task definition, verbatim, as provenance
- taskId and runId
- the worker's group, id and host environment
- the SHA-256 digest of every artifact with on-disk content

The field names are a fixed contract with certificate consumers.
Building an attestation performs no I/O; identical inputs always
serialize to identical bytes.
"""

import copy
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping

from .canonicalization import SerializationError, serialize_document
from .config import WorkerConfig
from .errors import InternalWorkerError
from .hashing import ArtifactDigest
from .util import validate_hex_string

CHAIN_OF_TRUST_VERSION = 1


@dataclass(frozen=True)
class CoTEnvironment:
    """Snapshot of the worker host, taken from worker configuration."""
    public_ip_address: str = ""
    private_ip_address: str = ""
    instance_id: str = ""
    instance_type: str = ""
    region: str = ""

    @classmethod
    def from_config(cls, config: WorkerConfig) -> 'CoTEnvironment':
        return cls(
            public_ip_address=config.public_ip,
            private_ip_address=config.private_ip,
            instance_id=config.instance_id,
            instance_type=config.instance_type,
            region=config.region,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "publicIpAddress": self.public_ip_address,
            "privateIpAddress": self.private_ip_address,
            "instanceId": self.instance_id,
            "instanceType": self.instance_type,
            "region": self.region,
        }


@dataclass(frozen=True)
class Attestation:
    """
    The unsigned chain of trust document.

    Created once per completed run and handed straight to the signer.
    """
    task_id: str
    run_id: int
    worker_group: str
    worker_id: str
    task: Mapping[str, Any]
    artifacts: Mapping[str, ArtifactDigest]
    environment: CoTEnvironment
    version: int = CHAIN_OF_TRUST_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire schema, in its fixed key order."""
        return {
            "chainOfTrustVersion": self.version,
            "artifacts": {
                name: self.artifacts[name].to_dict()
                for name in sorted(self.artifacts)
            },
            "task": copy.deepcopy(dict(self.task)),
            "taskId": self.task_id,
            "runId": self.run_id,
            "workerGroup": self.worker_group,
            "workerId": self.worker_id,
            "environment": self.environment.to_dict(),
        }

    def serialize(self) -> bytes:
        """
        Render the attestation as document bytes.

        Raises:
            InternalWorkerError: If the task definition is not serializable
        """
        try:
            return serialize_document(self.to_dict())
        except SerializationError as e:
            raise InternalWorkerError("Could not serialize chain of trust certificate", str(e)) from e


def build_attestation(
    task_id: str,
    run_id: int,
    worker_group: str,
    worker_id: str,
    task_definition: Mapping[str, Any],
    artifact_digests: Mapping[str, ArtifactDigest],
    environment: CoTEnvironment,
) -> Attestation:
    """
    Assemble the attestation for a finished run.

    Args:
        task_id: Task identifier
        run_id: Run number, non-negative
        worker_group: Worker group the run executed in
        worker_id: Worker that executed the run
        task_definition: The task as originally submitted, copied verbatim
        artifact_digests: Output of hash_artifacts
        environment: Host snapshot

    Returns:
        Frozen Attestation with chainOfTrustVersion 1

    Raises:
        InternalWorkerError: If run metadata is missing or malformed
    """
    for field_name, value in (
        ("taskId", task_id),
        ("workerGroup", worker_group),
        ("workerId", worker_id),
    ):
        if not isinstance(value, str) or not value:
            raise InternalWorkerError("Invalid run metadata", f"{field_name} must be a non-empty string")

    if isinstance(run_id, bool) or not isinstance(run_id, int) or run_id < 0:
        raise InternalWorkerError("Invalid run metadata", "runId must be an unsigned integer")

    for name, digest in artifact_digests.items():
        if not isinstance(digest, ArtifactDigest) or not validate_hex_string(digest.value, 64):
            raise InternalWorkerError("Invalid artifact digest", name)

    return Attestation(
        task_id=task_id,
        run_id=run_id,
        worker_group=worker_group,
        worker_id=worker_id,
        task=MappingProxyType(copy.deepcopy(dict(task_definition))),
        artifacts=MappingProxyType(dict(artifact_digests)),
        environment=environment,
    )
