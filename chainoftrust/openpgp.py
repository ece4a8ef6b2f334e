"""
OpenPGP Wire Format

The subset of RFC 4880 the chain of trust needs: v4 Ed25519 keys (the
EdDSA curve key GnuPG generates for `ed25519`), v4 signatures made with
them, packet framing and ASCII armor. Signatures produced here verify with
stock OpenPGP tooling such as `gpg --verify`.

For EdDSA the Ed25519 signature is taken over the OpenPGP hash digest, not
over the message itself.
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .util import b64d, b64e, wrap_b64

# Packet tags
TAG_SIGNATURE = 2
TAG_SECRET_KEY = 5
TAG_PUBLIC_KEY = 6
TAG_USER_ID = 13

KEY_VERSION = 4
SIGNATURE_VERSION = 4

# EdDSA over Ed25519
ALGORITHM_EDDSA = 22
ED25519_OID = bytes.fromhex("2b06010401da470f01")
# Prefix of a native (compressed) curve point
NATIVE_POINT = b"\x40"

HASH_SHA256 = 8
HASH_SHA384 = 9
HASH_SHA512 = 10
HASH_ALGORITHMS = {
    HASH_SHA256: "sha256",
    HASH_SHA384: "sha384",
    HASH_SHA512: "sha512",
}

SIG_CANONICAL_TEXT = 0x01
SIG_POSITIVE_CERTIFICATION = 0x13

SUBPACKET_CREATION_TIME = 2
SUBPACKET_ISSUER = 16
SUBPACKET_KEY_FLAGS = 27
SUBPACKET_ISSUER_FINGERPRINT = 33

KEY_FLAG_CERTIFY = 0x01
KEY_FLAG_SIGN = 0x02

CRC24_INIT = 0xB704CE
CRC24_POLY = 0x1864CFB


class OpenPGPError(ValueError):
    """Raised when OpenPGP data is malformed or uses an unsupported feature."""
    pass


# =============================================================================
# Framing
# =============================================================================

def encode_length(length: int) -> bytes:
    """Encode a new-format packet or subpacket length."""
    if length < 192:
        return bytes([length])
    if length < 8384:
        length -= 192
        return bytes([(length >> 8) + 192, length & 0xFF])
    return b"\xff" + struct.pack(">I", length)


def encode_packet(tag: int, body: bytes) -> bytes:
    """Frame a packet body with a new-format header."""
    return bytes([0xC0 | tag]) + encode_length(len(body)) + body


def _require(data: bytes, end: int, what: str) -> None:
    if end > len(data):
        raise OpenPGPError(f"truncated {what}")


def iter_packets(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """
    Split binary OpenPGP data into (tag, body) pairs.

    Accepts old and new format headers. Partial and indeterminate lengths
    are not used for keys or signatures and are rejected.
    """
    offset = 0
    while offset < len(data):
        first = data[offset]
        if not first & 0x80:
            raise OpenPGPError(f"invalid packet header byte 0x{first:02x}")

        if first & 0x40:
            tag = first & 0x3F
            _require(data, offset + 2, "packet header")
            octet = data[offset + 1]
            if octet < 192:
                length, start = octet, offset + 2
            elif octet < 224:
                _require(data, offset + 3, "packet header")
                length = ((octet - 192) << 8) + data[offset + 2] + 192
                start = offset + 3
            elif octet == 255:
                _require(data, offset + 6, "packet header")
                length = struct.unpack_from(">I", data, offset + 2)[0]
                start = offset + 6
            else:
                raise OpenPGPError("partial body lengths are not supported")
        else:
            tag = (first >> 2) & 0x0F
            length_type = first & 0x03
            if length_type == 3:
                raise OpenPGPError("indeterminate packet lengths are not supported")
            start = offset + 1 + (1 << length_type)
            _require(data, start, "packet header")
            length = int.from_bytes(data[offset + 1:start], "big")

        end = start + length
        _require(data, end, "packet")
        yield tag, data[start:end]
        offset = end


def encode_mpi(value: bytes) -> bytes:
    """Encode a big-endian integer as an MPI."""
    stripped = value.lstrip(b"\x00")
    bits = (len(stripped) - 1) * 8 + stripped[0].bit_length() if stripped else 0
    return struct.pack(">H", bits) + stripped


def read_mpi(data: bytes, offset: int) -> Tuple[bytes, int]:
    """Read an MPI at offset. Returns (value, offset after it)."""
    _require(data, offset + 2, "MPI")
    bits = struct.unpack_from(">H", data, offset)[0]
    end = offset + 2 + (bits + 7) // 8
    _require(data, end, "MPI")
    return data[offset + 2:end], end


def encode_subpacket(kind: int, data: bytes) -> bytes:
    return encode_length(len(data) + 1) + bytes([kind]) + data


def parse_subpackets(area: bytes) -> List[Tuple[int, bytes]]:
    """Split a signature subpacket area into (type, data) pairs."""
    items = []
    offset = 0
    while offset < len(area):
        first = area[offset]
        if first < 192:
            length, offset = first, offset + 1
        elif first < 255:
            _require(area, offset + 2, "subpacket header")
            length = ((first - 192) << 8) + area[offset + 1] + 192
            offset += 2
        else:
            _require(area, offset + 5, "subpacket header")
            length = struct.unpack_from(">I", area, offset + 1)[0]
            offset += 5
        if length < 1:
            raise OpenPGPError("empty signature subpacket")
        _require(area, offset + length, "subpacket")
        # Bit 7 is the critical flag
        items.append((area[offset] & 0x7F, area[offset + 1:offset + length]))
        offset += length
    return items


# =============================================================================
# Keys
# =============================================================================

@dataclass(frozen=True)
class PublicKeyPacket:
    """A v4 EdDSA Ed25519 public key."""
    created: int
    point: bytes

    def body(self) -> bytes:
        return (
            struct.pack(">BIB", KEY_VERSION, self.created, ALGORITHM_EDDSA)
            + bytes([len(ED25519_OID)]) + ED25519_OID
            + encode_mpi(NATIVE_POINT + self.point)
        )

    def hash_material(self) -> bytes:
        """The key as it is fed into fingerprints and certifications."""
        body = self.body()
        return b"\x99" + struct.pack(">H", len(body)) + body

    @property
    def fingerprint(self) -> bytes:
        return hashlib.sha1(self.hash_material()).digest()

    @property
    def key_id(self) -> bytes:
        return self.fingerprint[-8:]

    def verify_key(self) -> VerifyKey:
        return VerifyKey(self.point)


def parse_public_key(body: bytes) -> Tuple[PublicKeyPacket, int]:
    """
    Parse the public part of a key packet.

    Returns:
        Tuple of (key, offset of the first byte after the public part)
    """
    _require(body, 7, "key packet")
    version, created, algorithm = struct.unpack_from(">BIB", body, 0)
    if version != KEY_VERSION:
        raise OpenPGPError(f"unsupported key version {version}")
    if algorithm != ALGORITHM_EDDSA:
        raise OpenPGPError(f"unsupported public key algorithm {algorithm}, expected EdDSA ({ALGORITHM_EDDSA})")
    oid_end = 7 + body[6]
    _require(body, oid_end, "curve OID")
    if body[7:oid_end] != ED25519_OID:
        raise OpenPGPError("unsupported curve, expected Ed25519")
    point, offset = read_mpi(body, oid_end)
    if len(point) != 33 or point[:1] != NATIVE_POINT:
        raise OpenPGPError("malformed Ed25519 public point")
    return PublicKeyPacket(created=created, point=point[1:]), offset


def encode_secret_key(public: PublicKeyPacket, seed: bytes) -> bytes:
    """Body of an unprotected secret key packet."""
    secret = encode_mpi(seed)
    checksum = sum(secret) & 0xFFFF
    return public.body() + b"\x00" + secret + struct.pack(">H", checksum)


def parse_secret_key(body: bytes) -> Tuple[PublicKeyPacket, bytes]:
    """
    Parse an unprotected secret key packet.

    Returns:
        Tuple of (public key, 32-byte Ed25519 seed)
    """
    public, offset = parse_public_key(body)
    _require(body, offset + 1, "secret key packet")
    if body[offset] != 0:
        raise OpenPGPError("secret key is passphrase protected; export it without protection")
    secret_start = offset + 1
    seed, offset = read_mpi(body, secret_start)
    _require(body, offset + 2, "secret key checksum")
    checksum = struct.unpack_from(">H", body, offset)[0]
    if checksum != sum(body[secret_start:offset]) & 0xFFFF:
        raise OpenPGPError("secret key checksum mismatch")
    if len(seed) > 32:
        raise OpenPGPError("malformed Ed25519 secret key")
    return public, seed.rjust(32, b"\x00")


def user_id_material(user_id: bytes) -> bytes:
    return b"\xb4" + struct.pack(">I", len(user_id)) + user_id


# =============================================================================
# Signatures
# =============================================================================

def _hashed_prefix(sig_type: int, hash_algorithm: int, hashed_area: bytes) -> bytes:
    return struct.pack(
        ">BBBBH", SIGNATURE_VERSION, sig_type, ALGORITHM_EDDSA, hash_algorithm, len(hashed_area),
    ) + hashed_area


def signature_digest(data: bytes, hashed_prefix: bytes, hash_algorithm: int) -> bytes:
    """Digest of signed data plus the v4 signature trailer."""
    name = HASH_ALGORITHMS.get(hash_algorithm)
    if name is None:
        raise OpenPGPError(f"unsupported hash algorithm {hash_algorithm}")
    hasher = hashlib.new(name)
    hasher.update(data)
    hasher.update(hashed_prefix)
    hasher.update(b"\x04\xff" + struct.pack(">I", len(hashed_prefix)))
    return hasher.digest()


@dataclass(frozen=True)
class Signature:
    """A v4 EdDSA signature packet."""
    sig_type: int
    hash_algorithm: int
    hashed_area: bytes
    unhashed_area: bytes
    left16: bytes
    r: bytes
    s: bytes

    def hashed_prefix(self) -> bytes:
        return _hashed_prefix(self.sig_type, self.hash_algorithm, self.hashed_area)

    def body(self) -> bytes:
        return (
            self.hashed_prefix()
            + struct.pack(">H", len(self.unhashed_area)) + self.unhashed_area
            + self.left16
            + encode_mpi(self.r)
            + encode_mpi(self.s)
        )

    def subpackets(self) -> Dict[int, bytes]:
        """Subpackets by type. Hashed values win over unhashed ones."""
        found = dict(parse_subpackets(self.unhashed_area))
        found.update(parse_subpackets(self.hashed_area))
        return found

    @property
    def created(self) -> Optional[int]:
        value = self.subpackets().get(SUBPACKET_CREATION_TIME)
        return struct.unpack(">I", value)[0] if value and len(value) == 4 else None

    @property
    def issuer_key_id(self) -> Optional[bytes]:
        subpackets = self.subpackets()
        fingerprint = subpackets.get(SUBPACKET_ISSUER_FINGERPRINT)
        if fingerprint and len(fingerprint) == 21:
            return fingerprint[-8:]
        return subpackets.get(SUBPACKET_ISSUER)


def parse_signature(body: bytes) -> Signature:
    _require(body, 6, "signature packet")
    version, sig_type, algorithm, hash_algorithm, hashed_len = struct.unpack_from(">BBBBH", body, 0)
    if version != SIGNATURE_VERSION:
        raise OpenPGPError(f"unsupported signature version {version}")
    if algorithm != ALGORITHM_EDDSA:
        raise OpenPGPError(f"unsupported signature algorithm {algorithm}")
    offset = 6 + hashed_len
    _require(body, offset + 2, "signature packet")
    hashed_area = body[6:offset]
    unhashed_len = struct.unpack_from(">H", body, offset)[0]
    offset += 2
    _require(body, offset + unhashed_len + 2, "signature packet")
    unhashed_area = body[offset:offset + unhashed_len]
    offset += unhashed_len
    left16 = body[offset:offset + 2]
    r, offset = read_mpi(body, offset + 2)
    s, offset = read_mpi(body, offset)
    if len(r) > 32 or len(s) > 32:
        raise OpenPGPError("malformed EdDSA signature")
    return Signature(
        sig_type=sig_type,
        hash_algorithm=hash_algorithm,
        hashed_area=hashed_area,
        unhashed_area=unhashed_area,
        left16=left16,
        r=r,
        s=s,
    )


def make_signature(
    signing_key: SigningKey,
    public: PublicKeyPacket,
    data: bytes,
    sig_type: int,
    created: int,
    extra_hashed: bytes = b"",
) -> Signature:
    """
    Sign data with SHA-512.

    The hashed area carries the creation time and issuer fingerprint; the
    unhashed area carries the issuer key id for older verifiers.
    """
    hashed_area = (
        encode_subpacket(SUBPACKET_CREATION_TIME, struct.pack(">I", created))
        + extra_hashed
        + encode_subpacket(SUBPACKET_ISSUER_FINGERPRINT, bytes([KEY_VERSION]) + public.fingerprint)
    )
    digest = signature_digest(data, _hashed_prefix(sig_type, HASH_SHA512, hashed_area), HASH_SHA512)
    raw = signing_key.sign(digest).signature
    return Signature(
        sig_type=sig_type,
        hash_algorithm=HASH_SHA512,
        hashed_area=hashed_area,
        unhashed_area=encode_subpacket(SUBPACKET_ISSUER, public.key_id),
        left16=digest[:2],
        r=raw[:32],
        s=raw[32:],
    )


def verify_signature(signature: Signature, data: bytes, verify_key: VerifyKey) -> bool:
    """
    Verify a signature over data.

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        digest = signature_digest(data, signature.hashed_prefix(), signature.hash_algorithm)
    except OpenPGPError:
        return False
    if digest[:2] != signature.left16:
        return False
    raw = signature.r.rjust(32, b"\x00") + signature.s.rjust(32, b"\x00")
    try:
        verify_key.verify(digest, raw)
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


# =============================================================================
# ASCII armor
# =============================================================================

def crc24(data: bytes) -> int:
    crc = CRC24_INIT
    for byte in data:
        crc ^= byte << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= CRC24_POLY
    return crc & 0xFFFFFF


def armor(label: str, data: bytes, headers: Optional[Dict[str, str]] = None) -> str:
    """Render binary data as an armored block with a CRC-24 checksum line."""
    lines = [f"-----BEGIN {label}-----"]
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    lines.append("")
    lines.append(wrap_b64(data))
    lines.append("=" + b64e(struct.pack(">I", crc24(data))[1:]))
    lines.append(f"-----END {label}-----")
    return "\n".join(lines) + "\n"


def dearmor(text: str, label: str) -> Tuple[Dict[str, str], bytes]:
    """
    Parse an armored block.

    Returns:
        Tuple of (armor headers, binary data)

    Raises:
        OpenPGPError: If the boundaries, headers, body or checksum are malformed
    """
    begin = f"-----BEGIN {label}-----"
    end = f"-----END {label}-----"
    lines = [line.rstrip() for line in text.strip().split("\n")]
    if not lines or lines[0] != begin:
        raise OpenPGPError(f"missing '{begin}' line")
    try:
        end_index = lines.index(end)
    except ValueError:
        raise OpenPGPError(f"missing '{end}' line")

    headers: Dict[str, str] = {}
    index = 1
    while index < end_index and lines[index]:
        name, sep, value = lines[index].partition(": ")
        if not sep:
            raise OpenPGPError(f"malformed armor header: {lines[index]!r}")
        headers[name] = value
        index += 1
    if index == end_index:
        raise OpenPGPError("missing blank line after armor headers")

    body = lines[index + 1:end_index]
    checksum = None
    if body and body[-1].startswith("="):
        checksum = body.pop()[1:]
    try:
        data = b64d("".join(body))
        expected = b64d(checksum) if checksum is not None else None
    except ValueError as e:
        raise OpenPGPError("armor body is not valid base64") from e
    if expected is not None and expected != struct.pack(">I", crc24(data))[1:]:
        raise OpenPGPError("armor checksum mismatch")
    return headers, data
