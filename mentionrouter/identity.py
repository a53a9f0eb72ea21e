"""
Device identity — Ed25519 keypair, device id, canonical auth payload, signing.

Depends on: config, models
"""

import base64
import hashlib
import json
import os
import sys
import time
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
    load_pem_public_key,
)

from mentionrouter.config import IDENTITY_FILE, PAYLOAD_DELIMITER
from mentionrouter.models import DeviceIdentity

IDENTITY_FORMAT_VERSION = 1

# DER prefix of an Ed25519 SubjectPublicKeyInfo; the 32 raw key bytes follow it.
ED25519_SPKI_PREFIX = bytes.fromhex("302a300506032b6570032100")


# =============================================================================
# Encoding helpers
# =============================================================================

def base64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def raw_public_key(public_key_pem: str) -> bytes:
    """Return the 32 raw Ed25519 public key bytes for a PEM SPKI key."""
    spki = load_pem_public_key(public_key_pem.encode("utf-8")).public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    )
    if len(spki) == len(ED25519_SPKI_PREFIX) + 32 and spki.startswith(ED25519_SPKI_PREFIX):
        return spki[len(ED25519_SPKI_PREFIX):]
    return spki


def fingerprint_public_key(public_key_pem: str) -> str:
    """Device id: sha256 hex of the raw public key bytes."""
    return hashlib.sha256(raw_public_key(public_key_pem)).hexdigest()


# =============================================================================
# Keypair / identity file
# =============================================================================

def generate_identity() -> DeviceIdentity:
    """Generate a fresh Ed25519 device identity (not persisted)."""
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")
    return DeviceIdentity(
        device_id=fingerprint_public_key(public_pem),
        public_key_pem=public_pem,
        private_key_pem=private_pem,
        created_at_ms=int(time.time() * 1000),
        signing_key=private_key,
    )


def _identity_from_dict(data: dict) -> Optional[DeviceIdentity]:
    """Rebuild an identity from its persisted form. None if malformed."""
    if not isinstance(data, dict) or data.get("version") != IDENTITY_FORMAT_VERSION:
        return None
    device_id = data.get("deviceId")
    public_pem = data.get("publicKeyPem")
    private_pem = data.get("privateKeyPem")
    if not (device_id and public_pem and private_pem):
        return None
    try:
        private_key = load_pem_private_key(private_pem.encode("utf-8"), password=None)
    except (ValueError, TypeError):
        return None
    if not isinstance(private_key, Ed25519PrivateKey):
        return None
    return DeviceIdentity(
        device_id=device_id,
        public_key_pem=public_pem,
        private_key_pem=private_pem,
        created_at_ms=int(data.get("createdAtMs") or 0),
        signing_key=private_key,
    )


def save_identity(identity: DeviceIdentity, path: str = IDENTITY_FILE) -> None:
    """Persist the identity as owner-only JSON (write temp file, then replace)."""
    os.makedirs(os.path.dirname(path) or ".", mode=0o700, exist_ok=True)
    data = {
        "version": IDENTITY_FORMAT_VERSION,
        "deviceId": identity.device_id,
        "publicKeyPem": identity.public_key_pem,
        "privateKeyPem": identity.private_key_pem,
        "createdAtMs": identity.created_at_ms,
    }
    tmp = path + ".tmp"
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


def load_or_create_identity(path: str = IDENTITY_FILE) -> DeviceIdentity:
    """Load the persisted device identity, or create and persist a new one.

    A missing, unreadable or malformed file yields a new identity. Failing to
    persist the new identity is logged, not fatal: the router still works,
    it just has to be paired again after a restart.
    """
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                identity = _identity_from_dict(json.load(f))
        except (OSError, ValueError) as e:
            print(f"[MentionRouter] Warning: could not read device identity {path}: {e}", file=sys.stderr)
            identity = None
        if identity is not None:
            print(f"[MentionRouter] Device identity loaded: {identity.device_id[:12]}...", file=sys.stderr)
            return identity
        print(f"[MentionRouter] Device identity at {path} is malformed, regenerating", file=sys.stderr)

    identity = generate_identity()
    try:
        save_identity(identity, path)
    except OSError as e:
        print(f"[MentionRouter] Warning: could not persist device identity: {e}", file=sys.stderr)
    print(f"[MentionRouter] Device identity created: {identity.device_id[:12]}...", file=sys.stderr)
    return identity


def private_key_of(identity: DeviceIdentity) -> Ed25519PrivateKey:
    if identity.signing_key is None:
        identity.signing_key = load_pem_private_key(identity.private_key_pem.encode("utf-8"), password=None)
    return identity.signing_key


# =============================================================================
# Signing & Verification
# =============================================================================

def build_device_auth_payload(device_id: str, client_id: str, client_mode: str, role: str,
                              scopes: list[str], signed_at_ms: int, token: Optional[str],
                              nonce: Optional[str] = None) -> str:
    """Canonical payload signed during the connect handshake.

    The version tag is v1 for unchallenged connects and v2 when a server
    nonce is bound into the signature.
    """
    parts = [
        "v2" if nonce else "v1",
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
    ]
    if nonce:
        parts.append(nonce)
    return PAYLOAD_DELIMITER.join(parts)


def sign_payload(identity: DeviceIdentity, payload: str) -> str:
    """Sign a payload. Returns the signature URL-safe base64, unpadded."""
    return base64url_encode(private_key_of(identity).sign(payload.encode("utf-8")))


def verify_payload(public_key: bytes, payload, signature) -> bool:
    """Verify a signature made by sign_payload against raw public key bytes.

    payload may be str or bytes; signature may be the encoded text or raw bytes.
    """
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    try:
        sig = base64url_decode(signature) if isinstance(signature, str) else signature
        key = Ed25519PublicKey.from_public_bytes(public_key)
        key.verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False
