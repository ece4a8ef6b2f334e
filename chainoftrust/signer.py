"""
Chain of Trust Certificate Signer

Produces the two chain of trust artifacts for a finished run, under the
run's worker directory:

1. generic-worker/certified.log: a byte-exact copy of the task log, taken
   before anything else can be appended to it
2. generic-worker/chainOfTrust.json.asc: the serialized attestation,
   clearsigned with the worker key

Nothing is published here. Any failure leaves the run without a certificate
and is reported as an internal worker error.
"""

import io
import os
import shutil
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable

from nacl.exceptions import CryptoError

from .certificate import Attestation
from .envelope import EnvelopeError, encode_envelope
from .errors import InternalWorkerError
from .hashing import sha256_hex
from .keys import WorkerSigningKey
from .logging_config import audit_log
from .openpgp import OpenPGPError

CERTIFIED_LOG_PATH = os.path.join("generic-worker", "certified.log")
CERTIFIED_LOG_NAME = "public/logs/certified.log"
SIGNED_CERT_PATH = os.path.join("generic-worker", "chainOfTrust.json.asc")
SIGNED_CERT_NAME = "public/chainOfTrust.json.asc"


@dataclass(frozen=True)
class SignedArtifacts:
    """Local files ready to hand to the uploader."""
    certified_log_path: str
    signed_cert_path: str
    document: bytes


def _create_no_follow(path: str, flags: int) -> int:
    return os.open(path, flags | os.O_NOFOLLOW, 0o644)


def write_file(path: str, source: BinaryIO) -> None:
    """
    Write everything left in source to path, creating its directory.

    An existing symlink at path is refused, never written through.

    Raises:
        InternalWorkerError: On any I/O failure
    """
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb", opener=_create_no_follow) as out:
            shutil.copyfileobj(source, out)
            out.flush()
            os.fsync(out.fileno())
    except OSError as e:
        raise InternalWorkerError(f"Could not write {path}", str(e)) from e


class CertificateSigner:
    """Renders attestations as signed, publishable files."""

    def __init__(self, key: WorkerSigningKey, clock: Callable[[], float] = time.time):
        self.key = key
        self.clock = clock

    def certify_log(self, log: BinaryIO, out_dir: str) -> str:
        """Copy the live log to the certified log location and return its path."""
        certified = os.path.join(out_dir, CERTIFIED_LOG_PATH)
        write_file(certified, log)
        return certified

    def render(self, attestation: Attestation) -> bytes:
        """
        Serialize and clearsign an attestation.

        Returns:
            The envelope bytes, ending in exactly one newline
        """
        return self._clearsign(attestation.serialize())

    def _clearsign(self, document: bytes) -> bytes:
        try:
            return encode_envelope(document, self.key, created=int(self.clock()))
        except (EnvelopeError, OpenPGPError, CryptoError) as e:
            raise InternalWorkerError("Could not sign chain of trust certificate", str(e)) from e

    def sign(self, attestation: Attestation, log: BinaryIO, out_dir: str) -> SignedArtifacts:
        """
        Produce the certified log and the signed certificate for a run.

        The log copy is taken first, so it reflects the run exactly as it
        stood when the command phase ended.

        Args:
            attestation: The run's attestation
            log: The live log, open for reading at its first byte
            out_dir: The run's worker directory

        Raises:
            InternalWorkerError: On any I/O, serialization or signing failure
        """
        certified_log = self.certify_log(log, out_dir)

        document = attestation.serialize()
        envelope = self._clearsign(document)

        signed_cert = os.path.join(out_dir, SIGNED_CERT_PATH)
        write_file(signed_cert, io.BytesIO(envelope))

        audit_log.certificate_signed(
            attestation.task_id,
            attestation.run_id,
            len(attestation.artifacts),
            sha256_hex(document),
        )
        return SignedArtifacts(
            certified_log_path=certified_log,
            signed_cert_path=signed_cert,
            document=document,
        )
