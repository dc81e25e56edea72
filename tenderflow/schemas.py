from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field


class AttachmentIn(BaseModel):
    filename: str = Field(min_length=1)
    size: int = Field(default=0, ge=0)
    mime_type: str = "application/octet-stream"
    url: str = ""


class CreateTenderRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    category_id: int | None = None
    category: str | None = None
    budget_min: Decimal | None = Field(default=None, ge=0)
    budget_max: Decimal | None = Field(default=None, ge=0)
    deadline: datetime | None = None
    requirements: str | None = None
    attachments: list[AttachmentIn] = Field(default_factory=list)
    status: Literal["draft", "open"] = "draft"


class UpdateTenderRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category_id: int | None = None
    budget_min: Decimal | None = Field(default=None, ge=0)
    budget_max: Decimal | None = Field(default=None, ge=0)
    deadline: datetime | None = None
    requirements: str | None = None
    attachments: list[AttachmentIn] | None = None


class SubmitBidRequest(BaseModel):
    tender_id: int
    amount: Decimal = Field(gt=0)
    proposal: str = ""
    delivery_timeline: str | None = None
    attachments: list[AttachmentIn] = Field(default_factory=list)


class UpdateBidRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    proposal: str | None = None
    delivery_timeline: str | None = None
    attachments: list[AttachmentIn] | None = None


class WithdrawBidRequest(BaseModel):
    reason: str | None = None


class EvaluateBidRequest(BaseModel):
    status: Literal["accepted", "rejected"]
    evaluation_notes: str | None = None


class AwardBidRequest(BaseModel):
    notes: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
