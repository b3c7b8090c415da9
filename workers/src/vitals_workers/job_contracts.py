"""Job payload contracts.

Every job type has a fixed payload shape that is validated on dispatch.
Unrecognized shapes are a non-retryable failure (JobValidationError).
"""

from __future__ import annotations

from datetime import date
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import JobValidationError

JOB_TYPE_WEBHOOK_PROCESSING = "webhook_processing"
JOB_TYPE_CONFIDENCE_CALCULATION = "confidence_calculation"
JOB_TYPE_TERRA_BACKFILL = "terra_backfill"
JOB_TYPE_RECOVER_STUCK = "maintenance.recover_stuck"

EventType = Literal["activity", "sleep", "body", "daily", "nutrition"]
EVENT_TYPES: tuple[str, ...] = ("activity", "sleep", "body", "daily", "nutrition")


class _Contract(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TerraUser(_Contract):
    user_id: str
    provider: str
    reference_id: str | None = None

    @field_validator("user_id", "provider")
    @classmethod
    def non_empty(cls, value: str, info: Any) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError(f"{info.field_name} must not be empty")
        return cleaned


class TerraWebhookBody(_Contract):
    type: str
    user: TerraUser
    data: list[dict[str, Any]] = Field(default_factory=list)
    reference_id: str | None = None

    @field_validator("type")
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("data", mode="before")
    @classmethod
    def coerce_data(cls, value: Any) -> Any:
        # Vendors occasionally send a bare object instead of a list.
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
        return value


class WebhookProcessingPayload(_Contract):
    webhook_id: str = Field(alias="webhookId")
    payload: TerraWebhookBody

    @field_validator("webhook_id")
    @classmethod
    def non_empty_id(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("webhookId must not be empty")
        return cleaned


class ConfidenceCalculationPayload(_Contract):
    user_id: str
    metric_name: str
    measurement_date: date | None = None

    @field_validator("user_id", "metric_name")
    @classmethod
    def non_empty(cls, value: str, info: Any) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError(f"{info.field_name} must not be empty")
        return cleaned


class TerraBackfillPayload(_Contract):
    user_id: str = Field(alias="userId")
    provider: str
    data_types: list[EventType] = Field(alias="dataTypes")
    start_date: date = Field(alias="startDate")
    end_date: date = Field(alias="endDate")

    @field_validator("data_types", mode="before")
    @classmethod
    def lower_data_types(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item).strip().lower() for item in value]
        return value

    @model_validator(mode="after")
    def check_range(self) -> "TerraBackfillPayload":
        if self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        if not self.data_types:
            raise ValueError("dataTypes must not be empty")
        return self


class RecoverStuckPayload(_Contract):
    timeout_minutes: int | None = Field(default=None, ge=1)


ContractT = TypeVar("ContractT", bound=BaseModel)


def parse_job_payload(model: type[ContractT], payload: Any, *, job_type: str) -> ContractT:
    """Validate a job payload, converting schema errors into non-retryable failures."""
    if not isinstance(payload, dict):
        raise JobValidationError(
            f"{job_type} payload must be an object, got {type(payload).__name__}",
            code="invalid_payload",
        )
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise JobValidationError(
            f"Invalid {job_type} payload: {first.get('msg', 'invalid payload')}"
            + (f" (field={field})" if field else ""),
            code="invalid_payload",
            field=field,
        ) from exc
