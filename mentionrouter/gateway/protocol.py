"""
Gateway wire protocol — envelope framing, connect params, handshake errors.

Envelope: {"type": "req"|"res"|"event", "id"?, "method"?, "params"?,
           "event"?, "payload"?, "error"?: {"code", "message"}}

Depends on: config, models, identity
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from mentionrouter.config import (
    CLIENT_ID,
    CLIENT_MODE,
    CLIENT_PLATFORM,
    CLIENT_ROLE,
    CLIENT_SCOPES,
    CLIENT_VERSION,
    ERROR_NOT_PAIRED,
    PROTOCOL_VERSION,
    STALE_TOKEN_MARKER,
)
from mentionrouter.identity import (
    base64url_encode,
    build_device_auth_payload,
    raw_public_key,
    sign_payload,
)
from mentionrouter.models import DeviceIdentity

EVENT_CONNECT_CHALLENGE = "connect.challenge"

# Synthetic error codes for results that never reached the gateway
CODE_TIMEOUT = "TIMEOUT"
CODE_CONNECTION_CLOSED = "CONNECTION_CLOSED"
CODE_SEND_FAILED = "SEND_FAILED"


# =============================================================================
# Results & errors
# =============================================================================

@dataclass
class RequestResult:
    """Outcome of one correlated request. Timeouts and drops are results too."""
    success: bool
    payload: dict = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def failure(cls, code: str, message: str) -> "RequestResult":
        return cls(success=False, error_code=code, error_message=message)

    @classmethod
    def from_frame(cls, frame: dict) -> "RequestResult":
        error = frame.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            return cls(
                success=False,
                payload=frame.get("payload") or {},
                error_code=error.get("code"),
                error_message=error.get("message") or "",
            )
        if frame.get("ok") is False:
            return cls(success=False, payload=frame.get("payload") or {}, error_message="request rejected")
        return cls(success=True, payload=frame.get("payload") or {})

    def describe(self) -> str:
        return f"{self.error_code or 'ERROR'}: {self.error_message or ''}".strip()


class HandshakeError(Exception):
    """The gateway refused a connect request."""


class NotPairedError(HandshakeError):
    """The gateway does not know this device yet; an approver should pair it shortly."""


class StaleTokenError(HandshakeError):
    """A stored device token was rejected."""


class HandshakeRejectedError(HandshakeError):
    """Any other refusal. Abandon the attempt and let backoff take over."""


def classify_connect_error(result: RequestResult, holding_device_token: bool) -> HandshakeError:
    """Map a failed connect result onto the handshake error taxonomy."""
    message = result.describe()
    if result.error_code == ERROR_NOT_PAIRED:
        return NotPairedError(message)
    if holding_device_token and STALE_TOKEN_MARKER in (result.error_message or "").lower():
        return StaleTokenError(message)
    return HandshakeRejectedError(message)


# =============================================================================
# Framing
# =============================================================================

def new_request_id() -> str:
    return str(uuid.uuid4())


def encode_request(request_id: str, method: str, params: dict) -> str:
    return json.dumps({"type": "req", "id": request_id, "method": method, "params": params})


def decode_frame(raw) -> Optional[dict]:
    """Parse one inbound frame. Returns None for anything that is not a JSON object."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return frame if isinstance(frame, dict) else None


def challenge_nonce(frame: dict) -> Optional[str]:
    """The nonce of a connect.challenge event, or None if frame is something else."""
    if frame.get("type") != "event" or frame.get("event") != EVENT_CONNECT_CHALLENGE:
        return None
    payload = frame.get("payload") or {}
    nonce = payload.get("nonce") if isinstance(payload, dict) else None
    return nonce or ""


def issued_device_token(payload: dict) -> Optional[str]:
    """Device token the gateway issued in a successful connect reply, if any."""
    auth = payload.get("auth") if isinstance(payload, dict) else None
    if isinstance(auth, dict):
        token = auth.get("deviceToken")
        if isinstance(token, str) and token:
            return token
    return None


# =============================================================================
# Connect params
# =============================================================================

def build_connect_params(identity: DeviceIdentity, auth_token: str,
                         nonce: Optional[str] = None,
                         signed_at_ms: Optional[int] = None) -> dict:
    """Build signed `connect` params for one handshake attempt."""
    if signed_at_ms is None:
        signed_at_ms = int(time.time() * 1000)
    payload = build_device_auth_payload(
        device_id=identity.device_id,
        client_id=CLIENT_ID,
        client_mode=CLIENT_MODE,
        role=CLIENT_ROLE,
        scopes=CLIENT_SCOPES,
        signed_at_ms=signed_at_ms,
        token=auth_token or None,
        nonce=nonce,
    )
    device = {
        "id": identity.device_id,
        "publicKey": base64url_encode(raw_public_key(identity.public_key_pem)),
        "signature": sign_payload(identity, payload),
        "signedAt": signed_at_ms,
    }
    if nonce:
        device["nonce"] = nonce

    return {
        "minProtocol": PROTOCOL_VERSION,
        "maxProtocol": PROTOCOL_VERSION,
        "client": {
            "id": CLIENT_ID,
            "version": CLIENT_VERSION,
            "platform": CLIENT_PLATFORM,
            "mode": CLIENT_MODE,
            "instanceId": str(uuid.uuid4()),
        },
        "caps": [],
        "auth": {"token": auth_token},
        "role": CLIENT_ROLE,
        "scopes": list(CLIENT_SCOPES),
        "device": device,
    }
