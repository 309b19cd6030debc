"""
Stateless capability tokens.

Format: base64url(canonical-json payload) "." base64url(HMAC-SHA256(secret, payload segment))
Both segments without padding. Validity depends only on the token bytes and the secret.
"""
import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.constant_time import bytes_eq

TOKEN_VERSION = 1
ISSUER = "presence-relay"
READ_PRESENCE = "read_presence"
DEFAULT_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def canonical_json(obj: dict) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


@dataclass(frozen=True)
class Verification:
    ok: bool
    reason: Optional[str] = None
    payload: Optional[dict] = None


class CapabilityTokenService:
    def __init__(self, secret, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        if not secret:
            raise ValueError("Signing secret must not be empty")
        self._key = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, payload_segment: str) -> str:
        h = hmac.HMAC(self._key, hashes.SHA256())
        h.update(payload_segment.encode("ascii"))
        return b64url_encode(h.finalize())

    def issue(self, subject: str, resource: str, scope: str = READ_PRESENCE) -> str:
        issued_at = int(self._clock())
        payload = {
            "v": TOKEN_VERSION,
            "iss": ISSUER,
            "sub": subject,
            "res": resource,
            "scope": scope,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        segment = b64url_encode(canonical_json(payload))
        return f"{segment}.{self._sign(segment)}"

    def verify(self, token, expected_subject: str, expected_resource: str,
               expected_scope: str = READ_PRESENCE) -> Verification:
        """
        Prüft einen Token. Genau ein Grund pro Fehlschlag, in dieser Reihenfolge:
        bad_format, bad_signature, bad_payload/bad_version, expired,
        subject_mismatch, resource_mismatch, scope_mismatch.

        Beide Segmente müssen ASCII sein, sonst bad_format. Ein manipuliertes
        Zeichen, das nicht ASCII ist, meldet daher bad_format statt bad_signature.
        """
        if not isinstance(token, str):
            return Verification(False, "bad_format")
        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return Verification(False, "bad_format")
        segment, signature = parts
        try:
            segment.encode("ascii")
            signature.encode("ascii")
        except UnicodeEncodeError:
            return Verification(False, "bad_format")

        # Konstante Laufzeit beim Vergleich
        if not bytes_eq(signature.encode("ascii"), self._sign(segment).encode("ascii")):
            return Verification(False, "bad_signature")

        try:
            payload = json.loads(b64url_decode(segment).decode("utf-8"))
        except (binascii.Error, ValueError):
            return Verification(False, "bad_payload")
        if not isinstance(payload, dict):
            return Verification(False, "bad_payload")
        if payload.get("v") != TOKEN_VERSION:
            return Verification(False, "bad_version")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, int):
            return Verification(False, "bad_payload")
        if int(self._clock()) > exp:
            return Verification(False, "expired")

        if payload.get("sub") != expected_subject:
            return Verification(False, "subject_mismatch")
        if payload.get("res") != expected_resource:
            return Verification(False, "resource_mismatch")
        if payload.get("scope") != expected_scope:
            return Verification(False, "scope_mismatch")
        return Verification(True, payload=payload)
