"""
Security Tests - Input Validation an der HTTP-Grenze.

Diese Tests validieren:
- Identity-Regeln (Typ, Länge)
- Geschlossene Wertemengen (State, Decision)
- Profil- und Avatar-Limits
"""
import base64

import pytest

from presence_relay.validation import (
    MAX_AVATAR_BYTES,
    MAX_DISPLAY_NAME_LENGTH,
    ValidationError,
    coerce_timestamp,
    validate_decision,
    validate_device,
    validate_distinct,
    validate_identity,
    validate_profile,
    validate_request_id,
    validate_state,
    validate_token,
)


class TestIdentityValidation:
    """Tests für Identity Validation"""

    def test_valid_identities(self):
        for identity in ["A" * 8, "x" * 128, "3f2b9c1e-0d4a-4c6b-9a51-7f3e2d1c0b9a", "user with spaces"]:
            assert validate_identity(identity) == identity

    @pytest.mark.parametrize("identity", ["", "short", "A" * 7, "A" * 129, None, 12345678, ["AAAAAAAA"],
                                          "\ud800AAAAAAAA", "AAAAAAAA\udfff"])
    def test_invalid_identities(self, identity):
        with pytest.raises(ValidationError) as exc:
            validate_identity(identity)
        assert exc.value.code == "bad_user_id"

    def test_same_user(self):
        with pytest.raises(ValidationError) as exc:
            validate_distinct("AAAAAAAA", "AAAAAAAA")
        assert exc.value.code == "same_user"
        validate_distinct("AAAAAAAA", "BBBBBBBB")


class TestEnumerations:
    """Tests für geschlossene Wertemengen"""

    def test_states(self):
        for state in ("active", "away", "asleep"):
            assert validate_state(state) == state

    @pytest.mark.parametrize("state", ["idle", "ACTIVE", "", None, 1])
    def test_bad_state(self, state):
        with pytest.raises(ValidationError, match="State must be"):
            validate_state(state)

    @pytest.mark.parametrize("decision", ["accept", "ALLOW", None, True])
    def test_bad_decision(self, decision):
        with pytest.raises(ValidationError) as exc:
            validate_decision(decision)
        assert exc.value.code == "bad_decision"


class TestFieldValidation:
    """Tests für sonstige Felder"""

    def test_device_defaults(self):
        assert validate_device(None) == "unknown"
        assert validate_device("") == "unknown"
        assert validate_device("iphone") == "iphone"

    def test_device_rejects_non_strings(self):
        with pytest.raises(ValidationError):
            validate_device({"x": 1})
        with pytest.raises(ValidationError):
            validate_device("d" * 65)

    def test_timestamp_coercion(self):
        assert coerce_timestamp(1700000000) == 1700000000
        assert coerce_timestamp(1700000000.9) == 1700000000
        assert coerce_timestamp("1700000000") is None
        assert coerce_timestamp(True) is None
        assert coerce_timestamp(None) is None

    def test_timestamp_non_finite(self):
        """Unendliche oder NaN-Werte fallen auf Serverzeit zurück"""
        assert coerce_timestamp(float("inf")) is None
        assert coerce_timestamp(float("-inf")) is None
        assert coerce_timestamp(float("nan")) is None
        assert coerce_timestamp(1e400) is None

    @pytest.mark.parametrize("request_id", ["", None, 5, "x" * 65])
    def test_bad_request_id(self, request_id):
        with pytest.raises(ValidationError) as exc:
            validate_request_id(request_id)
        assert exc.value.code == "bad_request_id"

    @pytest.mark.parametrize("token", ["", None, 5, "t" * 5000])
    def test_bad_token(self, token):
        with pytest.raises(ValidationError) as exc:
            validate_token(token)
        assert exc.value.code == "bad_token"


class TestProfileValidation:
    """Tests für Profil-Daten und Avatar-Upload"""

    def test_trims_and_decodes(self):
        avatar = b"\x89PNG\r\n"
        name, handle, blob = validate_profile(" Bob ", " bob@example.com ", base64.b64encode(avatar).decode())
        assert (name, handle, blob) == ("Bob", "bob@example.com", avatar)

    def test_avatar_optional(self):
        assert validate_profile("Bob", "bob", None) == ("Bob", "bob", None)

    @pytest.mark.parametrize("name,handle", [(None, "h"), ("n", None), (1, "h"), ("n", ["h"])])
    def test_non_string_fields(self, name, handle):
        with pytest.raises(ValidationError) as exc:
            validate_profile(name, handle)
        assert exc.value.code == "bad_profile_data"

    def test_display_name_too_long(self):
        with pytest.raises(ValidationError, match="displayName too long"):
            validate_profile("n" * (MAX_DISPLAY_NAME_LENGTH + 1), "h")

    def test_invalid_base64(self):
        with pytest.raises(ValidationError, match="Invalid avatar encoding"):
            validate_profile("n", "h", "not base64 !!!")

    def test_avatar_too_large(self):
        """SECURITY: Verhindert Memory Exhaustion durch riesige Avatare"""
        big = base64.b64encode(b"\x00" * (MAX_AVATAR_BYTES + 1)).decode()
        with pytest.raises(ValidationError, match="Avatar too large"):
            validate_profile("n", "h", big)
