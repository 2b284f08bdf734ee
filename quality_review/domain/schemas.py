"""
Pydantic schemas and parsers for every write the engine accepts.

Dimension management payloads are pydantic models. Score payloads depend on
the configured score scale, so they go through ``parse_scores_payload``, which
rejects the whole payload on the first bad entry instead of dropping entries.
"""

from __future__ import annotations

import re
from html import unescape
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..infrastructure.exceptions import ValidationError
from .models import Audience, EvaluatorRole, ScoreEntry, ScoreScale, UnitType


class BaseValidationSchema(BaseModel):
    """Base schema with common validation utilities."""

    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    @field_validator("*", mode="before")
    @classmethod
    def sanitize_strings(cls, v):
        """Strip markup and control characters from string inputs."""
        if isinstance(v, str):
            cleaned = unescape(v.strip())
            cleaned = re.sub(
                r"<\s*script[^>]*>.*?<\s*/\s*script\s*>",
                "",
                cleaned,
                flags=re.IGNORECASE | re.DOTALL,
            )
            cleaned = re.sub(r"<[^>]+>", "", cleaned)
            cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]", "", cleaned)
            return cleaned
        return v


def _normalize_unit_types(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    known = {unit_type.value for unit_type in UnitType}
    normalized: list[str] = []
    for item in value:
        tag = str(item).strip().upper()
        if tag not in known:
            raise ValueError(f"Unknown unit type: {item}")
        if tag not in normalized:
            normalized.append(tag)
    return normalized


class DimensionCreateInput(BaseValidationSchema):
    """New review question; roles come from ``roles`` or the ``audience`` shorthand."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=5000)
    is_active: bool = True
    audience: Audience | None = None
    roles: list[EvaluatorRole] | None = None
    unit_types: list[str] | None = None
    required_flag: str | None = Field(None, max_length=100)

    @field_validator("audience", mode="before")
    @classmethod
    def normalize_audience(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("unit_types")
    @classmethod
    def validate_unit_types(cls, v):
        return _normalize_unit_types(v)

    @field_validator("description", "required_flag")
    @classmethod
    def blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def validate_role_source(self):
        if self.audience is not None and self.roles is not None:
            raise ValueError("Provide either audience or roles, not both")
        return self


class DimensionUpdateInput(BaseValidationSchema):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=5000)
    is_active: bool | None = None
    unit_types: list[str] | None = None
    required_flag: str | None = Field(None, max_length=100)

    @field_validator("unit_types")
    @classmethod
    def validate_unit_types(cls, v):
        return _normalize_unit_types(v)


class ReorderInput(BaseValidationSchema):
    dimension_ids: list[int] = Field(..., min_length=1)

    @field_validator("dimension_ids")
    @classmethod
    def validate_ids(cls, v):
        if any(dimension_id <= 0 for dimension_id in v):
            raise ValueError("All question IDs must be positive integers")
        if len(set(v)) != len(v):
            raise ValueError("Duplicate question IDs are not allowed")
        return v


class AudienceInput(BaseValidationSchema):
    audience: Audience

    @field_validator("audience", mode="before")
    @classmethod
    def normalize_audience(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class RolesInput(BaseValidationSchema):
    roles: list[EvaluatorRole]

    @field_validator("roles", mode="before")
    @classmethod
    def normalize_roles(cls, v):
        if isinstance(v, list):
            return [item.strip().upper() if isinstance(item, str) else item for item in v]
        return v


def _parse_dimension_id(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
        return value if value > 0 else None
    return None


def parse_scores_payload(raw_scores: Any, scale: ScoreScale) -> list[ScoreEntry]:
    """
    Parse ``[{"dimensionId": ..., "score": ...}, ...]`` against ``scale``.

    Raises:
        ValidationError: on the first malformed entry; nothing is kept.

    Example:
        >>> parse_scores_payload([{"dimensionId": 4, "score": "high"}], scale)
        [ScoreEntry(dimension_id=4, score='HIGH')]
    """
    if not isinstance(raw_scores, list) or not raw_scores:
        raise ValidationError("scores", "scores must be a non-empty array", raw_scores)

    parsed: list[ScoreEntry] = []
    seen: set[int] = set()
    for raw in raw_scores:
        if not isinstance(raw, dict):
            raise ValidationError("scores", "Each score entry must be an object", raw)

        dimension_id = _parse_dimension_id(raw.get("dimensionId"))
        if dimension_id is None:
            raise ValidationError(
                "dimensionId", "Each score entry requires a valid dimensionId", raw.get("dimensionId")
            )
        if dimension_id in seen:
            raise ValidationError(
                "dimensionId", f"Duplicate dimensionId in scores payload: {dimension_id}", dimension_id
            )

        score = scale.parse(raw.get("score"))
        if score is None:
            raise ValidationError(
                "score", f"Invalid score value for dimension {dimension_id}", raw.get("score")
            )

        seen.add(dimension_id)
        parsed.append(ScoreEntry(dimension_id=dimension_id, score=score))
    return parsed


class ValidationErrorDetail(BaseModel):
    field: str
    message: str
    value: Any = None


class ValidationResponse(BaseModel):
    success: bool
    errors: list[ValidationErrorDetail] = []
    data: dict[str, Any] | None = None


def validate_input(schema_class: type[BaseModel], data: dict[str, Any]) -> ValidationResponse:
    """
    Centralized validation returning structured results instead of raising.

    Example:
        >>> result = validate_input(ReorderInput, {"dimension_ids": [3, 1, 2]})
        >>> result.success
        True
    """
    try:
        validated = schema_class(**data)
        return ValidationResponse(success=True, data=validated.model_dump())
    except Exception as e:
        errors = []
        if hasattr(e, "errors"):
            for error in e.errors():
                errors.append(
                    ValidationErrorDetail(
                        field=".".join(str(x) for x in error["loc"]) or "general",
                        message=error["msg"],
                        value=error.get("input"),
                    )
                )
        else:
            errors.append(ValidationErrorDetail(field="general", message=str(e)))

        return ValidationResponse(success=False, errors=errors)


def require_valid(schema_class: type[BaseModel], data: dict[str, Any]) -> BaseModel:
    """Validate ``data`` or raise ``ValidationError`` for the first failing field."""
    result = validate_input(schema_class, data)
    if not result.success:
        first = result.errors[0]
        raise ValidationError(
            first.field,
            first.message,
            first.value,
            details={"errors": [error.model_dump() for error in result.errors]},
        )
    return schema_class(**data)
