from __future__ import annotations

from typing import Any, Dict, List, Mapping, Type

from pydantic import ValidationError as PydanticValidationError

from adminguard.api.schemas import OperationPayload
from adminguard.service.errors import FieldError, ValidationError, ValidationFailure

_KIND_BY_ERROR_TYPE: Dict[str, ValidationFailure] = {
    "missing": ValidationFailure.MISSING_FIELD,
    "extra_forbidden": ValidationFailure.UNKNOWN_FIELD,
    "string_too_short": ValidationFailure.OUT_OF_RANGE,
    "string_too_long": ValidationFailure.OUT_OF_RANGE,
    "too_short": ValidationFailure.OUT_OF_RANGE,
    "too_long": ValidationFailure.OUT_OF_RANGE,
    "greater_than": ValidationFailure.OUT_OF_RANGE,
    "greater_than_equal": ValidationFailure.OUT_OF_RANGE,
    "less_than": ValidationFailure.OUT_OF_RANGE,
    "less_than_equal": ValidationFailure.OUT_OF_RANGE,
    "string_pattern_mismatch": ValidationFailure.PATTERN_MISMATCH,
    "value_error": ValidationFailure.PATTERN_MISMATCH,
    "literal_error": ValidationFailure.PATTERN_MISMATCH,
    "enum": ValidationFailure.PATTERN_MISMATCH,
}

BODY_FIELD = "body"


def _field_name(loc: tuple) -> str:
    if not loc:
        return BODY_FIELD
    # Report the top-level wire name; nested locs come from operator-shaped values
    return str(loc[0])


def _to_field_errors(exc: PydanticValidationError) -> List[FieldError]:
    errors: List[FieldError] = []
    seen: set[tuple[str, ValidationFailure]] = set()
    for err in exc.errors(include_url=False, include_input=False):
        field = _field_name(tuple(err.get("loc") or ()))
        kind = _KIND_BY_ERROR_TYPE.get(err.get("type", ""), ValidationFailure.TYPE_MISMATCH)
        if (field, kind) in seen:
            continue
        seen.add((field, kind))
        errors.append(FieldError(field=field, kind=kind))
    return errors


class SchemaValidator:
    """Validate decoded payloads against an operation's payload model.

    Never coerces: an ``int`` field given ``"30"`` is a type mismatch, and
    a string field given an object is a type mismatch rather than a
    stringified value.
    """

    def validate(self, schema: Type[OperationPayload], payload: Any) -> OperationPayload:
        if not isinstance(payload, Mapping):
            raise ValidationError(
                "request body must be a JSON object",
                [FieldError(field=BODY_FIELD, kind=ValidationFailure.TYPE_MISMATCH)],
            )
        try:
            return schema.model_validate(dict(payload))
        except PydanticValidationError as exc:
            field_errors = _to_field_errors(exc)
            raise ValidationError("invalid request payload", field_errors) from exc


__all__ = ["SchemaValidator", "BODY_FIELD"]
