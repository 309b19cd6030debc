"""Input validation for the relay's HTTP boundary."""
import base64
import binascii
import math


# Limits
MIN_IDENTITY_LENGTH = 8
MAX_IDENTITY_LENGTH = 128
MAX_DEVICE_LENGTH = 64
MAX_REQUEST_ID_LENGTH = 64
MAX_TOKEN_LENGTH = 4096
MAX_DISPLAY_NAME_LENGTH = 100
MAX_HANDLE_LENGTH = 256
MAX_AVATAR_BYTES = 1536 * 1024  # 1.5 MiB dekodiert

PRESENCE_STATES = ("active", "away", "asleep")
DECISIONS = ("allow", "deny")
DEFAULT_DEVICE = "unknown"


class ValidationError(ValueError):
    """Validation failure with a machine-readable error code."""

    def __init__(self, code: str, detail: str = ""):
        super().__init__(detail or code)
        self.code = code
        self.detail = detail


def validate_identity(identity) -> str:
    """
    Validiert eine selbst gewählte Identity.

    Checks:
    - Typ: String
    - Länge: 8-128 Zeichen
    - als UTF-8 kodierbar (keine einzelnen Surrogates)

    Der Inhalt wird nicht weiter geprüft, Identities sind opak.

    Raises:
        ValidationError: bad_user_id
    """
    if not isinstance(identity, str):
        raise ValidationError("bad_user_id", "Identity must be a string")
    if not (MIN_IDENTITY_LENGTH <= len(identity) <= MAX_IDENTITY_LENGTH):
        raise ValidationError(
            "bad_user_id",
            f"Identity must be between {MIN_IDENTITY_LENGTH} and {MAX_IDENTITY_LENGTH} characters",
        )
    try:
        identity.encode("utf-8")
    except UnicodeEncodeError:
        raise ValidationError("bad_user_id", "Identity must be valid UTF-8 text")
    return identity


def validate_distinct(from_identity: str, to_identity: str) -> None:
    if from_identity == to_identity:
        raise ValidationError("same_user", "Cannot send a request to yourself")


def validate_state(state) -> str:
    if state not in PRESENCE_STATES:
        raise ValidationError("bad_state", f"State must be one of {', '.join(PRESENCE_STATES)}")
    return state


def validate_device(device) -> str:
    """Fehlendes oder leeres Device wird zu 'unknown'."""
    if device is None or device == "":
        return DEFAULT_DEVICE
    if not isinstance(device, str) or len(device) > MAX_DEVICE_LENGTH:
        raise ValidationError("bad_device", f"Device must be a string of at most {MAX_DEVICE_LENGTH} characters")
    return device


def coerce_timestamp(timestamp):
    """Returns the client timestamp if numeric, else None (server time is used)."""
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return None
    if isinstance(timestamp, float) and not math.isfinite(timestamp):
        return None
    return int(timestamp)


def validate_request_id(request_id) -> str:
    if not isinstance(request_id, str) or not request_id or len(request_id) > MAX_REQUEST_ID_LENGTH:
        raise ValidationError("bad_request_id", "Request id must be a non-empty string")
    return request_id


def validate_decision(decision) -> str:
    if decision not in DECISIONS:
        raise ValidationError("bad_decision", "Decision must be 'allow' or 'deny'")
    return decision


def validate_token(token) -> str:
    if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
        raise ValidationError("bad_token", "Token must be a non-empty string")
    return token


def validate_profile(display_name, handle, avatar_b64=None):
    """
    Validiert Profildaten und dekodiert den Avatar.

    Checks:
    - displayName/handle: Strings, getrimmt, Längenlimit
    - avatarBlob: optional, gültiges Base64, max. 1.5 MiB dekodiert

    Returns:
        (display_name, handle, avatar_bytes | None)

    Raises:
        ValidationError: bad_profile_data
    """
    if not isinstance(display_name, str) or not isinstance(handle, str):
        raise ValidationError("bad_profile_data", "displayName and handle must be strings")

    display_name = display_name.strip()
    handle = handle.strip()
    if len(display_name) > MAX_DISPLAY_NAME_LENGTH:
        raise ValidationError("bad_profile_data", f"displayName too long (max {MAX_DISPLAY_NAME_LENGTH})")
    if len(handle) > MAX_HANDLE_LENGTH:
        raise ValidationError("bad_profile_data", f"handle too long (max {MAX_HANDLE_LENGTH})")

    if avatar_b64 is None:
        return display_name, handle, None
    if not isinstance(avatar_b64, str):
        raise ValidationError("bad_profile_data", "avatarBlob must be a base64 string")
    try:
        avatar = base64.b64decode(avatar_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("bad_profile_data", f"Invalid avatar encoding: {e}")
    if len(avatar) > MAX_AVATAR_BYTES:
        raise ValidationError(
            "bad_profile_data", f"Avatar too large: {len(avatar)} bytes (max {MAX_AVATAR_BYTES})"
        )
    return display_name, handle, avatar
