"""
Chain of Trust Error Taxonomy

Every failure raised by the certification engine carries the resolution
reason the run supervisor must report. There are three classes:

- MalformedPayloadError: the task/worker-type combination is misconfigured
  (signing key readable by the task user, reserved artifact name reuse).
  The task's own command never executes.
- InternalWorkerError: I/O, hashing, serialization or signing failure while
  producing the certificate. The run fails; the worker process survives.
- UploadError: the transport could not publish an artifact. An unpublished
  certificate means the trust claim does not exist, so the run fails.
"""

from enum import Enum
from typing import Optional


class RunState(str, Enum):
    """Final state of a task run."""
    COMPLETED = "completed"
    FAILED = "failed"
    EXCEPTION = "exception"


class ResolutionReason(str, Enum):
    """Reason a task run resolved the way it did."""
    COMPLETED = "completed"
    FAILED = "failed"
    MALFORMED_PAYLOAD = "malformed-payload"
    INTERNAL_ERROR = "internal-error"


class CertificationError(Exception):
    """Base class for chain of trust failures."""

    reason: ResolutionReason = ResolutionReason.INTERNAL_ERROR

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message if not detail else f"{message}: {detail}")

    @property
    def state(self) -> RunState:
        return RunState.EXCEPTION


class MalformedPayloadError(CertificationError):
    """Raised when the task payload cannot be honoured safely on this worker."""

    reason = ResolutionReason.MALFORMED_PAYLOAD


class KeyCustodyViolation(MalformedPayloadError):
    """Raised when the task user is able to read the private signing key."""

    def __init__(self, key_location: str, principal: str):
        self.key_location = key_location
        self.principal = principal
        super().__init__(
            "Was expecting attempt to read private chain of trust key as task user to fail - however, it did not!",
            f"key={key_location} principal={principal}",
        )


class ReservedArtifactError(MalformedPayloadError):
    """Raised when a task declares an artifact under a feature-owned name."""

    def __init__(self, artifact_name: str):
        self.artifact_name = artifact_name
        super().__init__(
            "Artifact name is reserved by the worker",
            artifact_name,
        )


class ArtifactPathError(MalformedPayloadError):
    """Raised when a declared artifact path is absolute or leaves the task directory."""

    def __init__(self, path: str):
        self.path = path
        super().__init__("Artifact path must stay inside the task directory", path)


class InternalWorkerError(CertificationError):
    """Raised when the worker itself fails while producing the certificate."""

    reason = ResolutionReason.INTERNAL_ERROR


class UploadError(CertificationError):
    """Raised when an artifact could not be handed to the upload transport."""

    reason = ResolutionReason.INTERNAL_ERROR

    def __init__(self, artifact_name: str, detail: Optional[str] = None):
        self.artifact_name = artifact_name
        super().__init__(f"Could not upload artifact {artifact_name}", detail)
