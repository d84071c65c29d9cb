from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from tool_lending.db.session import transaction
from tool_lending.models.lending_models import (
    APPROVED,
    CANCELLED,
    LOAN_ACTIVE,
    PENDING,
    REJECTED,
    REQUEST_STATES,
    TOOL_AVAILABLE,
    TOOL_LOANED,
    Loan,
    LoanRequest,
    Tool,
)
from tool_lending.schemas.lending import CreateRequestDto
from tool_lending.services import loan_service, tool_service
from tool_lending.services.audit_service import log_audit
from tool_lending.services.errors import AccessDenied, NotFound, StateConflict, ValidationFailed


LOGGER = logging.getLogger("tool_lending.workflow")


def serialize_request(request: LoanRequest) -> dict:
    tool = request.Tool
    return {
        "requestID": request.RequestID,
        "userID": request.UserID,
        "userName": request.User.FullName if request.User else None,
        "toolID": request.ToolID,
        "toolName": tool.ToolName if tool else None,
        "scanCode": tool.ScanCode if tool else None,
        "toolStatus": tool.Status if tool else None,
        "status": request.Status,
        "useDate": request.UseDate,
        "returnDate": request.ReturnDate,
        "reason": request.Reason,
        "reviewerID": request.ReviewerID,
        "reviewerName": request.Reviewer.FullName if request.Reviewer else None,
        "reviewedAt": request.ReviewedAt,
        "adminComment": request.AdminComment,
        "createdDate": request.CreatedDate,
    }


def _base_query():
    return select(LoanRequest).options(
        selectinload(LoanRequest.Tool),
        selectinload(LoanRequest.User),
        selectinload(LoanRequest.Reviewer),
    )


def list_requests(db: Session, status: str | None = None) -> list[LoanRequest]:
    stmt = _base_query()
    if status:
        if status not in REQUEST_STATES:
            raise ValidationFailed(f"Unknown request status: {status}")
        stmt = stmt.where(LoanRequest.Status == status)
    stmt = stmt.order_by(LoanRequest.CreatedDate.desc(), LoanRequest.RequestID.desc())
    return list(db.execute(stmt).scalars().all())


def list_user_requests(db: Session, user_id: int) -> list[LoanRequest]:
    stmt = (
        _base_query()
        .where(LoanRequest.UserID == user_id)
        .order_by(LoanRequest.CreatedDate.desc(), LoanRequest.RequestID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def _lock_request(db: Session, request_id: int) -> LoanRequest:
    request = db.execute(
        select(LoanRequest).where(LoanRequest.RequestID == request_id).with_for_update()
    ).scalars().first()
    if not request:
        raise NotFound("Request not found")
    return request


def create_request(db: Session, user_id: int, payload: CreateRequestDto) -> LoanRequest:
    if payload.returnDate < payload.useDate:
        raise ValidationFailed("returnDate must be on or after useDate.")

    with transaction(db):
        if not db.get(Tool, payload.toolID):
            raise NotFound("Tool not found")
        duplicate = db.execute(
            select(LoanRequest.RequestID)
            .where(LoanRequest.UserID == user_id)
            .where(LoanRequest.ToolID == payload.toolID)
            .where(LoanRequest.Status == PENDING)
        ).first()
        if duplicate:
            raise StateConflict("You already have a pending request for this tool")

        request = LoanRequest(
            UserID=user_id,
            ToolID=payload.toolID,
            Status=PENDING,
            UseDate=payload.useDate,
            ReturnDate=payload.returnDate,
            Reason=(payload.reason or None),
            CreatedDate=datetime.now(),
        )
        db.add(request)
        db.flush()
    LOGGER.info("Request %s created by user %s for tool %s", request.RequestID, user_id, payload.toolID)
    return request


def approve_request(db: Session, request_id: int, admin_id: int, comment: str | None = None) -> Loan:
    """Approve a pending request: the request, a new active loan and the tool
    state change commit together or not at all."""
    with transaction(db):
        request = _lock_request(db, request_id)
        if request.Status != PENDING:
            raise StateConflict(f"The request was already {request.Status}")

        tool = tool_service.lock_tool(db, request.ToolID)
        if tool.Status != TOOL_AVAILABLE:
            raise StateConflict(f"The tool is no longer available. Current state: {tool.Status}")

        now = datetime.now()
        request.Status = APPROVED
        request.ReviewerID = admin_id
        request.ReviewedAt = now
        request.AdminComment = comment or None

        loan = Loan(
            RequestID=request.RequestID,
            UserID=request.UserID,
            ToolID=request.ToolID,
            ApproverID=admin_id,
            Status=LOAN_ACTIVE,
            LoanDate=request.UseDate,
            ApprovedAt=now,
            EstimatedReturnDate=request.ReturnDate,
            Notes=f"Approved by admin. {comment or ''}".strip(),
            CreatedDate=now,
        )
        loan_service.add_active_loan(db, loan)

        tool_service.transition_tool(db, tool, TOOL_LOANED)
        log_audit(
            db,
            "request",
            request.RequestID,
            "approve_request",
            f"Request approved. Loan ID: {loan.LoanID}",
            user_id=admin_id,
        )
    LOGGER.info("Request %s approved by %s; loan %s opened", request_id, admin_id, loan.LoanID)
    return loan


def reject_request(db: Session, request_id: int, admin_id: int, comment: str | None) -> LoanRequest:
    reason = (comment or "").strip()
    if not reason:
        raise ValidationFailed("A rejection comment is required.")

    with transaction(db):
        request = _lock_request(db, request_id)
        if request.Status != PENDING:
            raise StateConflict(f"The request was already {request.Status}")
        request.Status = REJECTED
        request.ReviewerID = admin_id
        request.ReviewedAt = datetime.now()
        request.AdminComment = reason
        log_audit(db, "request", request.RequestID, "reject_request", reason, user_id=admin_id)
    LOGGER.info("Request %s rejected by %s", request_id, admin_id)
    return request


def cancel_request(db: Session, request_id: int, user_id: int) -> LoanRequest:
    with transaction(db):
        request = _lock_request(db, request_id)
        if request.UserID != user_id:
            raise AccessDenied("You are not allowed to cancel this request")
        if request.Status != PENDING:
            raise StateConflict(f"You cannot cancel a request that is {request.Status}")
        request.Status = CANCELLED
        log_audit(db, "request", request.RequestID, "cancel_request", "Cancelled by requester", user_id=user_id)
    return request
