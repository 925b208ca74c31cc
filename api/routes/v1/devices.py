"""
api/routes/v1/devices.py -- Device registration, history and admin unlock endpoints.

Routes:
  POST /api/v1/devices/register            -- present a fingerprint (requires auth)
  GET  /api/v1/devices                     -- device history (requires auth + device)
  POST /api/v1/devices/{event_id}/unlock   -- review a locked change (admin only)

A WARN decision still succeeds: the body carries the warning text and the
response gets an X-Device-Warning header. A lock is a 403 with the pending
event id in `data` so the client can tell the user what to quote to support.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.envelope import http_error, ok
from api.guards import DEVICE_WARNING_HEADER, Principal, guard
from api.models import (
    DeviceChangeEventResponse,
    DeviceDecisionResponse,
    DeviceHistoryResponse,
    DeviceRegisterRequest,
    DeviceResponse,
    Envelope,
    UnlockRequest,
)
from core.outcomes import AuthError, Rejected
from devices.models import DeviceVerdict, ReviewDecision

router = APIRouter()


def _warning_text(changes_remaining: int | None) -> str:
    return (
        f"New device registered. {changes_remaining} more device change(s) are allowed "
        "before the account is locked for review."
    )


@router.post("/devices/register", response_model=Envelope, response_model_by_alias=True)
def register_device(
    request: Request,
    response: Response,
    body: DeviceRegisterRequest,
    principal: Principal = Depends(guard("devices.register")),
) -> Envelope:
    """Register the caller's device or record a device change."""
    decision = request.app.state.device_policy.validate_or_register_device(principal.account.id, body.fingerprint)
    if decision.verdict is DeviceVerdict.LOCKED_PENDING_REVIEW:
        raise http_error(AuthError.DEVICE_LOCKED_PENDING_REVIEW, data={"event_id": decision.event_id})

    warning = None
    if decision.verdict is DeviceVerdict.WARN:
        warning = _warning_text(decision.changes_remaining)
        response.headers[DEVICE_WARNING_HEADER] = f"changes-remaining={decision.changes_remaining}"
    return ok(DeviceDecisionResponse.from_domain(decision, warning), message="Device accepted")


@router.get("/devices", response_model=Envelope, response_model_by_alias=True)
def list_devices(
    request: Request,
    account_id: Optional[int] = Query(default=None, ge=1),
    principal: Principal = Depends(guard("devices.list")),
) -> Envelope:
    """Devices and change ledger. Admins may pass account_id to see another account."""
    target = principal.account.id
    if account_id is not None and account_id != principal.account.id:
        if not principal.is_admin:
            raise http_error(AuthError.FORBIDDEN)
        if request.app.state.auth_store.get_by_id(account_id) is None:
            raise http_error(AuthError.NOT_FOUND)
        target = account_id

    history = request.app.state.device_policy.history(target)
    return ok(
        DeviceHistoryResponse(
            account_id=target,
            state=history["state"].value,
            change_count=history["change_count"],
            changes_remaining=history["changes_remaining"],
            devices=[DeviceResponse.from_domain(d) for d in history["devices"]],
            events=[DeviceChangeEventResponse.from_domain(e) for e in history["events"]],
        )
    )


@router.post("/devices/{event_id}/unlock", response_model=Envelope, response_model_by_alias=True)
def unlock(
    request: Request,
    event_id: int,
    body: Optional[UnlockRequest] = None,
    principal: Principal = Depends(guard("devices.unlock")),
) -> Envelope:
    """Approve or reject a locked device change. Admin only.

    Approval activates the requested device and lifts the lock. Rejection
    keeps the account locked; the same event can still be approved later.
    """
    decision = ReviewDecision((body or UnlockRequest()).decision.value)
    event = request.app.state.device_policy.admin_review(event_id, decision, principal.account.id)
    if isinstance(event, Rejected):
        raise http_error(event.error)
    message = "Device change approved" if decision is ReviewDecision.APPROVE else "Device change rejected"
    return ok(DeviceChangeEventResponse.from_domain(event), message=message)
