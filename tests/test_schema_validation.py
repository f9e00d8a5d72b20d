"""Tests for operation payload validation.

Payloads are validated strictly: no type coercion, undeclared keys are
rejected, and every failure names the offending wire field and an error
kind.
"""

import pytest

from adminguard.api.schemas import (
    BanIpPayload,
    BanUserPayload,
    CreateLicensePayload,
    ListUsersPayload,
    VerifyAdminPayload,
)
from adminguard.service.errors import ValidationError, ValidationFailure
from adminguard.service.validation import SchemaValidator


@pytest.fixture
def validator():
    return SchemaValidator()


def _ban_user(**overrides):
    payload = {"userId": "user1234567", "reason": "spam", "duration": 30}
    payload.update(overrides)
    return payload


def _errors(exc_info):
    return {(err.field, err.kind) for err in exc_info.value.field_errors}


class TestBanUserSchema:
    def test_valid_payload(self, validator):
        result = validator.validate(BanUserPayload, _ban_user())
        assert result.user_id == "user1234567"
        assert result.reason == "spam"
        assert result.duration == 30
        assert result.target_summary() == "user:user1234567"

    def test_operator_object_is_type_mismatch(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(userId={"$ne": None}))
        assert _errors(exc_info) == {("userId", ValidationFailure.TYPE_MISMATCH)}

    def test_numeric_string_duration_not_coerced(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(duration="30"))
        assert _errors(exc_info) == {("duration", ValidationFailure.TYPE_MISMATCH)}

    def test_boolean_duration_rejected(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(duration=True))
        assert exc_info.value.kinds == {ValidationFailure.TYPE_MISMATCH}

    def test_unknown_field_rejected(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(isAdmin=True))
        assert _errors(exc_info) == {("isAdmin", ValidationFailure.UNKNOWN_FIELD)}

    def test_snake_case_name_is_unknown_field(self, validator):
        payload = {"user_id": "user1234567", "reason": "spam", "duration": 30}
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, payload)
        assert ("user_id", ValidationFailure.UNKNOWN_FIELD) in _errors(exc_info)
        assert ("userId", ValidationFailure.MISSING_FIELD) in _errors(exc_info)

    def test_missing_field(self, validator):
        payload = _ban_user()
        del payload["reason"]
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, payload)
        assert _errors(exc_info) == {("reason", ValidationFailure.MISSING_FIELD)}

    def test_pattern_mismatch(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(userId="user 1234567"))
        assert _errors(exc_info) == {("userId", ValidationFailure.PATTERN_MISMATCH)}

    @pytest.mark.parametrize("length", [10, 100])
    def test_user_id_length_bounds_accepted(self, validator, length):
        result = validator.validate(BanUserPayload, _ban_user(userId="u" * length))
        assert len(result.user_id) == length

    @pytest.mark.parametrize("length", [9, 101])
    def test_user_id_length_bounds_rejected(self, validator, length):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(userId="u" * length))
        assert _errors(exc_info) == {("userId", ValidationFailure.OUT_OF_RANGE)}

    @pytest.mark.parametrize("length", [4, 500])
    def test_reason_length_bounds_accepted(self, validator, length):
        validator.validate(BanUserPayload, _ban_user(reason="r" * length))

    @pytest.mark.parametrize("length", [3, 501])
    def test_reason_length_bounds_rejected(self, validator, length):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(reason="r" * length))
        assert _errors(exc_info) == {("reason", ValidationFailure.OUT_OF_RANGE)}

    @pytest.mark.parametrize("duration", [0, 36501, -5])
    def test_duration_out_of_range(self, validator, duration):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(duration=duration))
        assert _errors(exc_info) == {("duration", ValidationFailure.OUT_OF_RANGE)}

    def test_float_duration_rejected(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, _ban_user(duration=30.0))
        assert exc_info.value.kinds == {ValidationFailure.TYPE_MISMATCH}

    def test_validated_payload_is_frozen(self, validator):
        result = validator.validate(BanUserPayload, _ban_user())
        with pytest.raises(Exception):
            result.duration = 99


class TestBodyShape:
    @pytest.mark.parametrize("body", [[1, 2], "ban", 42, None])
    def test_non_object_body(self, validator, body):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(BanUserPayload, body)
        assert _errors(exc_info) == {("body", ValidationFailure.TYPE_MISMATCH)}

    def test_verify_admin_accepts_empty_object(self, validator):
        result = validator.validate(VerifyAdminPayload, {})
        assert result.target_summary() == "self"

    def test_verify_admin_rejects_extra_keys(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(VerifyAdminPayload, {"isAdmin": True})
        assert _errors(exc_info) == {("isAdmin", ValidationFailure.UNKNOWN_FIELD)}


class TestOtherSchemas:
    def test_list_users_limit_optional(self, validator):
        assert validator.validate(ListUsersPayload, {}).limit is None
        assert validator.validate(ListUsersPayload, {"limit": 1000}).limit == 1000

    def test_list_users_limit_bounds(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(ListUsersPayload, {"limit": 1001})
        assert _errors(exc_info) == {("limit", ValidationFailure.OUT_OF_RANGE)}

    @pytest.mark.parametrize("plan", ["basic", "pro", "enterprise"])
    def test_license_plans(self, validator, plan):
        result = validator.validate(CreateLicensePayload, {"plan": plan, "validityDays": 365})
        assert result.validity_days == 365

    @pytest.mark.parametrize("plan", ["premium", "pro ", "Basic", "basic' OR '1'='1"])
    def test_license_plan_pattern(self, validator, plan):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(CreateLicensePayload, {"plan": plan, "validityDays": 30})
        assert exc_info.value.kinds <= {
            ValidationFailure.PATTERN_MISMATCH,
            ValidationFailure.OUT_OF_RANGE,
        }

    def test_license_validity_bounds(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(CreateLicensePayload, {"plan": "pro", "validityDays": 3651})
        assert _errors(exc_info) == {("validityDays", ValidationFailure.OUT_OF_RANGE)}

    @pytest.mark.parametrize("address", ["10.0.0.1", "2001:db8::1", "::1"])
    def test_ban_ip_accepts_addresses(self, validator, address):
        result = validator.validate(
            BanIpPayload, {"ipAddress": address, "reason": "abuse", "duration": 1}
        )
        assert result.target_summary() == f"ip:{result.ip_address}"

    def test_ban_ip_normalizes_ipv6(self, validator):
        result = validator.validate(
            BanIpPayload, {"ipAddress": "2001:DB8::1", "reason": "abuse", "duration": 1}
        )
        assert result.ip_address == "2001:db8::1"

    @pytest.mark.parametrize("address", ["999.1.1.1", "not-an-ip", "10.0.0.1; rm -rf /"])
    def test_ban_ip_rejects_non_addresses(self, validator, address):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(
                BanIpPayload, {"ipAddress": address, "reason": "abuse", "duration": 1}
            )
        assert _errors(exc_info) == {("ipAddress", ValidationFailure.PATTERN_MISMATCH)}
