"""
Chain of Trust Worker Feature

The process-wide ChainOfTrustFeature loads the signing key once at worker
startup. For each task run that asks for it (payload.features.chainOfTrust),
a ChainOfTrustTaskFeature walks the run through its lifecycle:

    DISABLED → ENABLED → STARTED → ARTIFACTS_COLLECTED → SIGNED → PUBLISHED → DONE
                  ↘          ↘               ↘               ↘
                                    ABORTED

- ENABLED → STARTED: the key custody guard proves the task user cannot read
  the key. Otherwise the run aborts as malformed-payload before the command.
- STARTED → ARTIFACTS_COLLECTED: the command phase ended, successfully or not.
- ARTIFACTS_COLLECTED → SIGNED: hash, build, copy log, sign.
- SIGNED → PUBLISHED → DONE: certified log and certificate uploaded.

Publication only begins after signing succeeded, so either both chain of
trust artifacts are published or neither is.
"""

import logging
from enum import Enum
from typing import List, Optional

from .certificate import CoTEnvironment, build_attestation
from .config import WorkerConfig
from .custody import KeyCustodyGuard, ReadProbe, TaskPrincipal
from .errors import CertificationError, InternalWorkerError
from .hashing import hash_artifacts
from .keys import WorkerSigningKey, load_signing_key, secure_signing_key
from .logging_config import audit_log
from .models import TaskPayload
from .runner import Feature, TaskFeature, TaskRun
from .signer import (
    CERTIFIED_LOG_NAME,
    SIGNED_CERT_NAME,
    CertificateSigner,
    SignedArtifacts,
)
from .upload import Uploader

logger = logging.getLogger(__name__)

CERTIFIED_LOG_CONTENT_TYPE = "text/plain; charset=utf-8"
SIGNED_CERT_CONTENT_TYPE = "text/plain; charset=utf-8"


class CoTState(str, Enum):
    """Lifecycle states of a run's chain of trust."""
    DISABLED = "DISABLED"
    ENABLED = "ENABLED"
    STARTED = "STARTED"
    ARTIFACTS_COLLECTED = "ARTIFACTS_COLLECTED"
    SIGNED = "SIGNED"
    PUBLISHED = "PUBLISHED"
    DONE = "DONE"
    ABORTED = "ABORTED"


class ChainOfTrustFeature(Feature):
    """
    Worker-wide chain of trust support.

    Usage:
        feature = ChainOfTrustFeature(config)
        feature.initialise()                  # once, at worker startup
        ...
        execute_run(run, [feature], command, uploader)
    """

    RESERVED_ARTIFACTS = (SIGNED_CERT_NAME, CERTIFIED_LOG_NAME)

    def __init__(
        self,
        config: WorkerConfig,
        probe: Optional[ReadProbe] = None,
        principal: Optional[TaskPrincipal] = None,
    ):
        self.config = config
        self.probe = probe
        self._principal = principal
        self._key: Optional[WorkerSigningKey] = None
        self.environment = CoTEnvironment.from_config(config)

    def name(self) -> str:
        return "Chain of Trust"

    def initialise(self) -> None:
        """
        Load the signing key and lock down its file permissions.

        Raises:
            InternalWorkerError: If the key cannot be loaded or secured
        """
        self._key = load_signing_key(self.config.signing_key_location)
        secure_signing_key(self.config.signing_key_location)

    @property
    def key(self) -> WorkerSigningKey:
        if self._key is None:
            raise InternalWorkerError("Chain of trust feature used before initialise()")
        return self._key

    def is_enabled(self, payload: TaskPayload) -> bool:
        return payload.features.chain_of_trust

    def reserved_artifacts(self) -> List[str]:
        return list(self.RESERVED_ARTIFACTS)

    def required_scopes(self) -> List[str]:
        # Any task may request a certificate.
        return []

    def task_principal(self) -> TaskPrincipal:
        """The identity task commands will run as."""
        if self._principal is not None:
            return self._principal
        if self.config.run_tasks_as_current_user:
            return TaskPrincipal.current_user()
        if not self.config.task_user:
            raise InternalWorkerError("No task user configured", "set COT_TASK_USER")
        return TaskPrincipal.from_username(self.config.task_user)

    def new_task_feature(self, run: TaskRun) -> 'ChainOfTrustTaskFeature':
        return ChainOfTrustTaskFeature(
            run=run,
            key=self.key,
            config=self.config,
            environment=self.environment,
            guard=KeyCustodyGuard(self.config.signing_key_location, self.probe),
            principal_source=self.task_principal,
        )


class ChainOfTrustTaskFeature(TaskFeature):
    """One run's chain of trust. Touches no other run's state."""

    def __init__(
        self,
        run: TaskRun,
        key: WorkerSigningKey,
        config: WorkerConfig,
        environment: CoTEnvironment,
        guard: KeyCustodyGuard,
        principal_source,
    ):
        self.run = run
        self.config = config
        self.environment = environment
        self.guard = guard
        self.signer = CertificateSigner(key)
        self._principal_source = principal_source
        self.state = CoTState.ENABLED
        self.signed: Optional[SignedArtifacts] = None

    def reserved_artifacts(self) -> List[str]:
        return list(ChainOfTrustFeature.RESERVED_ARTIFACTS)

    def _expect(self, state: CoTState) -> None:
        if self.state != state:
            raise InternalWorkerError(
                "Illegal chain of trust transition",
                f"expected {state.value}, in {self.state.value}",
            )

    def _abort(self, error: CertificationError) -> None:
        self.state = CoTState.ABORTED
        audit_log.certification_failed(self.run.task_id, self.run.run_id, error.reason.value, str(error))

    def start(self) -> None:
        """
        Verify key custody before the task command runs.

        Raises:
            KeyCustodyViolation: If the task user can read the key
            InternalWorkerError: If the check itself could not be performed
        """
        self._expect(CoTState.ENABLED)
        try:
            self.guard.check(self._principal_source())
        except CertificationError as e:
            self._abort(e)
            raise
        self.state = CoTState.STARTED

    def stop(self, uploader: Uploader) -> None:
        """
        Certify the finished run and publish the certificate.

        Raises:
            InternalWorkerError: On any hashing, signing or I/O failure
            UploadError: If either artifact could not be published
        """
        self._expect(CoTState.STARTED)
        self.state = CoTState.ARTIFACTS_COLLECTED
        try:
            self.signed = self._certify()
            self.state = CoTState.SIGNED
            self._publish(uploader)
            self.state = CoTState.PUBLISHED
        except CertificationError as e:
            self._abort(e)
            raise
        audit_log.certificate_published(self.run.task_id, self.run.run_id)
        self.state = CoTState.DONE

    def _certify(self) -> SignedArtifacts:
        digests = hash_artifacts(self.run.artifacts, self.run.task_dir)
        attestation = build_attestation(
            task_id=self.run.task_id,
            run_id=self.run.run_id,
            worker_group=self.config.worker_group,
            worker_id=self.config.worker_id,
            task_definition=self.run.definition,
            artifact_digests=digests,
            environment=self.environment,
        )
        with self.run.open_log() as log:
            return self.signer.sign(attestation, log, self.run.worker_dir)

    def _publish(self, uploader: Uploader) -> None:
        uploader.upload(CERTIFIED_LOG_NAME, self.signed.certified_log_path, CERTIFIED_LOG_CONTENT_TYPE)
        uploader.upload(SIGNED_CERT_NAME, self.signed.signed_cert_path, SIGNED_CERT_CONTENT_TYPE)
