"""
Submission Routes
==================

Accepts form submissions and exposes dispatch state.

Submissions are accepted asynchronously: the response carries the work
item ids (202), and delivery is followed through ``/status`` and
``/records/{item_id}``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field, JsonValue

from formrelay.core.types import ItemState, Submission
from formrelay.infra.runtime.orchestrator import DispatchOrchestrator
from formrelay.infra.telemetry import get_metrics

from ..deps import get_orchestrator

router = APIRouter()


# ==================== Request / Response Models ====================


class FormData(BaseModel):
    """Raw form fields, passed on exactly as posted.

    Nothing is coerced here: a ``"yes"`` consent flag or a ``"720"`` credit
    score must reach the field rules and fail there with its reason.
    """

    model_config = ConfigDict(extra="allow")

    personalName: JsonValue = None
    customerID: JsonValue = None
    emailAddress: JsonValue = None
    phoneNumber: JsonValue = None
    dateOfBirth: JsonValue = None
    currentAddress: JsonValue = None
    mailingAddress: JsonValue = None
    employmentStatus: JsonValue = None
    incomeRange: JsonValue = None
    creditScore: JsonValue = None
    productCategory: JsonValue = None
    requestDate: JsonValue = None
    priorityLevel: JsonValue = None
    preferredContactMethod: JsonValue = None
    accountType: JsonValue = None
    documentType: JsonValue = None
    documentID: JsonValue = None
    approvalStatus: JsonValue = None
    processingNotes: JsonValue = None
    consentGiven: JsonValue = None
    marketingOptIn: JsonValue = None
    lastUpdated: JsonValue = None
    agentID: JsonValue = None
    deviceType: JsonValue = None
    ipAddress: JsonValue = None


class SubmissionRequest(BaseModel):
    form: FormData
    priority: int | None = Field(default=None, ge=0, description="Higher is more urgent; defaults to DEFAULT_PRIORITY")


class SubmissionAccepted(BaseModel):
    submission_id: str
    customer_id: str
    item_ids: list[str]


# ==================== Routes ====================


@router.post(
    "/submissions/{customer_id}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionAccepted,
)
async def submit_form(
    customer_id: str,
    request: SubmissionRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> SubmissionAccepted:
    """Fan a form out to every endpoint enabled for the customer."""
    submission = Submission.from_form(request.form.model_dump(exclude_none=True), customer_id=customer_id)
    item_ids = await orchestrator.submit(submission, customer_id, priority=request.priority)
    return SubmissionAccepted(
        submission_id=submission.submission_id,
        customer_id=customer_id,
        item_ids=item_ids,
    )


@router.post(
    "/submissions/{customer_id}/endpoints/{endpoint}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionAccepted,
)
async def submit_form_to_endpoint(
    customer_id: str,
    endpoint: str,
    request: SubmissionRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> SubmissionAccepted:
    submission = Submission.from_form(request.form.model_dump(exclude_none=True), customer_id=customer_id)
    item_id = await orchestrator.submit_to_endpoint(
        submission, endpoint, priority=request.priority, customer_id=customer_id
    )
    return SubmissionAccepted(
        submission_id=submission.submission_id,
        customer_id=customer_id,
        item_ids=[item_id],
    )


@router.get("/status")
async def dispatch_status(
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return {
        **orchestrator.status().to_dict(),
        "metrics": get_metrics().get_summary(),
    }


@router.get("/records")
async def list_records(
    state: ItemState | None = None,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    return [r.to_dict() for r in orchestrator.records() if state is None or r.state is state]


@router.get("/records/{item_id}")
async def get_record(
    item_id: str,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    record = orchestrator.record(item_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No dispatch record for item {item_id}")
    return record.to_dict()
