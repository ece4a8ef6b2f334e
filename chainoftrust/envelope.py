"""
Clearsigned Envelope

An OpenPGP cleartext signed message: the document stays readable as plain
text and `gpg --verify` checks it against the worker's public key.

    -----BEGIN PGP SIGNED MESSAGE-----
    Hash: SHA512

    <document; lines starting with "-" are written as "- -...">
    -----BEGIN PGP SIGNATURE-----

    <base64 signature packet>
    =<crc24>
    -----END PGP SIGNATURE-----

The signature is a canonical text signature: lines are joined with CRLF,
trailing spaces and tabs are ignored and the line break before the
signature block is not signed. Documents end with a newline, so decoding
restores that newline and recovers the document byte for byte.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from nacl.signing import VerifyKey

from .keys import WorkerSigningKey
from .openpgp import (
    HASH_ALGORITHMS,
    SIG_CANONICAL_TEXT,
    TAG_SIGNATURE,
    OpenPGPError,
    Signature,
    armor,
    dearmor,
    encode_packet,
    iter_packets,
    parse_signature,
    verify_signature,
)

MESSAGE_HEADER = "-----BEGIN PGP SIGNED MESSAGE-----"
SIGNATURE_LABEL = "PGP SIGNATURE"
SIGNATURE_HEADER = f"-----BEGIN {SIGNATURE_LABEL}-----"
SIGNATURE_FOOTER = f"-----END {SIGNATURE_LABEL}-----"

# Armor header naming the signature's digest algorithm
HASH_NAME = "SHA512"


class EnvelopeError(ValueError):
    """Raised when an envelope cannot be built or parsed."""
    pass


@dataclass(frozen=True)
class SignedEnvelope:
    """A decoded envelope."""
    headers: Dict[str, str]
    document: bytes
    signature: Signature

    @property
    def key_id(self) -> Optional[str]:
        issuer = self.signature.issuer_key_id
        return issuer.hex().upper() if issuer else None

    @property
    def created(self) -> Optional[int]:
        return self.signature.created


def dash_escape(line: str) -> str:
    """Escape a line that begins with a dash."""
    return "- " + line if line.startswith("-") else line


def dash_unescape(line: str) -> str:
    """Reverse dash_escape."""
    return line[2:] if line.startswith("- ") else line


def canonical_text(lines: List[str]) -> bytes:
    """The bytes a cleartext signature covers."""
    return "\r\n".join(line.rstrip(" \t") for line in lines).encode("utf-8")


def _document_lines(document: bytes) -> List[str]:
    if not document.endswith(b"\n"):
        raise EnvelopeError("document must end with a newline")
    try:
        text = document.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EnvelopeError("document is not valid UTF-8") from e
    if "\r" in text:
        raise EnvelopeError("document must use LF line endings")
    return text[:-1].split("\n")


def encode_envelope(document: bytes, key: WorkerSigningKey, created: Optional[int] = None) -> bytes:
    """
    Clearsign a document.

    Args:
        document: UTF-8 bytes ending with a single newline
        key: The worker signing key
        created: Signature creation time; defaults to now

    Returns:
        Envelope bytes ending with the END line and one newline
    """
    lines = _document_lines(document)
    signature = key.sign(
        canonical_text(lines),
        SIG_CANONICAL_TEXT,
        int(time.time()) if created is None else created,
    )

    head = [MESSAGE_HEADER, f"Hash: {HASH_NAME}", ""]
    body = [dash_escape(line) for line in lines]
    block = armor(SIGNATURE_LABEL, encode_packet(TAG_SIGNATURE, signature.body()))
    return ("\n".join(head + body) + "\n" + block).encode("utf-8")


def decode_envelope(data: bytes) -> SignedEnvelope:
    """
    Split an envelope into headers, document and signature.

    Performs no verification.

    Raises:
        EnvelopeError: If the envelope is malformed
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EnvelopeError("envelope is not valid UTF-8") from e

    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]
    if lines[0] != MESSAGE_HEADER:
        raise EnvelopeError("missing signed message header")

    headers: Dict[str, str] = {}
    index = 1
    while index < len(lines) and lines[index]:
        name, sep, value = lines[index].partition(": ")
        if not sep:
            raise EnvelopeError(f"malformed armor header: {lines[index]!r}")
        headers[name] = value
        index += 1
    if index == len(lines):
        raise EnvelopeError("missing blank line after armor headers")

    try:
        sig_index = lines.index(SIGNATURE_HEADER, index + 1)
    except ValueError:
        raise EnvelopeError("missing signature block")
    body = [dash_unescape(line) for line in lines[index + 1:sig_index]]

    try:
        _, packet_data = dearmor("\n".join(lines[sig_index:]), SIGNATURE_LABEL)
        packets = [packet for tag, packet in iter_packets(packet_data) if tag == TAG_SIGNATURE]
        if len(packets) != 1:
            raise OpenPGPError(f"expected one signature packet, found {len(packets)}")
        signature = parse_signature(packets[0])
    except OpenPGPError as e:
        raise EnvelopeError(f"malformed signature block: {e}") from e

    document = "\n".join(body) + "\n"
    return SignedEnvelope(headers=headers, document=document.encode("utf-8"), signature=signature)


def verify_envelope(envelope: SignedEnvelope, verify_key: VerifyKey) -> bool:
    """
    Check an envelope's signature against a public key.

    Returns:
        True if the document is signed by the key, False otherwise
    """
    declared = envelope.headers.get("Hash")
    if declared is not None:
        names = {name.strip().upper() for name in declared.split(",")}
        if HASH_ALGORITHMS.get(envelope.signature.hash_algorithm, "").upper() not in names:
            return False
    if envelope.signature.sig_type != SIG_CANONICAL_TEXT:
        return False
    try:
        lines = _document_lines(envelope.document)
    except EnvelopeError:
        return False
    return verify_signature(envelope.signature, canonical_text(lines), verify_key)
