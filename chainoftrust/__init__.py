"""
Chain of Trust Worker Feature

Version: 1.0.0

Produces a signed certificate for every task run that asks for one, binding
the task definition, the worker's identity and host, and the SHA-256 digest
of every artifact the run produced. The certificate is an OpenPGP
clearsigned message, so downstream consumers can check it with `gpg --verify`
to confirm an artifact came from a trusted worker.

The feature is fail-closed. If the task user can read the signing key, the
task is refused before its command runs. If anything goes wrong while
hashing, signing or publishing, the run fails and no certificate exists.

Usage:
    from chainoftrust import (
        ChainOfTrustFeature,
        InMemoryUploader,
        SubprocessCommand,
        TaskRun,
        execute_run,
        load_worker_config,
    )

    config = load_worker_config()
    feature = ChainOfTrustFeature(config)
    feature.initialise()                    # loads and locks down the key

    with TaskRun(task_id, run_id, task_definition, task_dir) as run:
        outcome = execute_run(run, [feature], SubprocessCommand(), InMemoryUploader())

    if outcome.state == RunState.COMPLETED:
        # public/chainOfTrust.json.asc and public/logs/certified.log published
        ...
"""

__version__ = "1.0.0"

# Configuration and errors
from .config import WorkerConfig, load_worker_config
from .errors import (
    ArtifactPathError,
    CertificationError,
    InternalWorkerError,
    KeyCustodyViolation,
    MalformedPayloadError,
    ReservedArtifactError,
    ResolutionReason,
    RunState,
    UploadError,
)

# Keys and signing
from .keys import (
    WorkerSigningKey,
    armor_private_key,
    armor_public_key,
    load_signing_key,
    read_armored_public_key,
)
from .envelope import SignedEnvelope, decode_envelope, encode_envelope, verify_envelope

# Certificate pipeline
from .artifacts import ErrorArtifact, FileArtifact, RedirectArtifact
from .hashing import ArtifactDigest, hash_artifacts, hash_file
from .certificate import Attestation, CoTEnvironment, build_attestation
from .custody import KeyCustodyGuard, PermissionProbe, SubprocessProbe, TaskPrincipal
from .signer import CERTIFIED_LOG_NAME, SIGNED_CERT_NAME, CertificateSigner

# Run lifecycle
from .feature import ChainOfTrustFeature, ChainOfTrustTaskFeature, CoTState
from .runner import CommandResult, RunOutcome, SubprocessCommand, TaskRun, execute_run
from .upload import InMemoryUploader, PutUrlUploader, S3Uploader, Uploader, get_uploader


__all__ = [
    "__version__",

    # Configuration
    "WorkerConfig",
    "load_worker_config",

    # Errors
    "ArtifactPathError",
    "CertificationError",
    "InternalWorkerError",
    "KeyCustodyViolation",
    "MalformedPayloadError",
    "ReservedArtifactError",
    "ResolutionReason",
    "RunState",
    "UploadError",

    # Keys
    "WorkerSigningKey",
    "armor_private_key",
    "armor_public_key",
    "load_signing_key",
    "read_armored_public_key",

    # Envelope
    "SignedEnvelope",
    "decode_envelope",
    "encode_envelope",
    "verify_envelope",

    # Artifacts
    "ErrorArtifact",
    "FileArtifact",
    "RedirectArtifact",
    "ArtifactDigest",
    "hash_artifacts",
    "hash_file",

    # Certificate
    "Attestation",
    "CoTEnvironment",
    "build_attestation",
    "CertificateSigner",
    "CERTIFIED_LOG_NAME",
    "SIGNED_CERT_NAME",

    # Custody
    "KeyCustodyGuard",
    "PermissionProbe",
    "SubprocessProbe",
    "TaskPrincipal",

    # Lifecycle
    "ChainOfTrustFeature",
    "ChainOfTrustTaskFeature",
    "CoTState",
    "CommandResult",
    "RunOutcome",
    "SubprocessCommand",
    "TaskRun",
    "execute_run",

    # Upload
    "Uploader",
    "InMemoryUploader",
    "S3Uploader",
    "PutUrlUploader",
    "get_uploader",
]
