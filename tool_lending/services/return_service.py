from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from tool_lending.db.session import transaction
from tool_lending.models.lending_models import (
    APPROVED,
    LOAN_ACTIVE,
    PENDING,
    REJECTED,
    RETURN_STATES,
    TOOL_AVAILABLE,
    TOOL_DECOMMISSIONED,
    TOOL_MAINTENANCE,
    Loan,
    Tool,
    ToolReturn,
)
from tool_lending.schemas.lending import SubmitReturnDto
from tool_lending.services import loan_service, tool_service
from tool_lending.services.audit_service import log_audit
from tool_lending.services.errors import NotFound, StateConflict, ValidationFailed


LOGGER = logging.getLogger("tool_lending.workflow")

RETURN_OUTCOMES = (TOOL_AVAILABLE, TOOL_MAINTENANCE, TOOL_DECOMMISSIONED)


def serialize_return(entry: ToolReturn) -> dict:
    tool = entry.Tool
    loan = entry.Loan
    return {
        "returnID": entry.ReturnID,
        "loanID": entry.LoanID,
        "toolID": entry.ToolID,
        "toolName": tool.ToolName if tool else None,
        "scanCode": tool.ScanCode if tool else None,
        "currentToolStatus": tool.Status if tool else None,
        "userID": entry.UserID,
        "userName": entry.User.FullName if entry.User else None,
        "status": entry.Status,
        "condition": entry.ReportedCondition,
        "userNotes": entry.UserNotes,
        "submittedAt": entry.SubmittedAt,
        "loanDate": loan.LoanDate if loan else None,
        "estimatedReturnDate": loan.EstimatedReturnDate if loan else None,
        "reviewerID": entry.ReviewerID,
        "reviewerName": entry.Reviewer.FullName if entry.Reviewer else None,
        "newToolStatus": entry.NewToolStatus,
        "adminNotes": entry.AdminNotes,
        "reviewedAt": entry.ReviewedAt,
        "createdDate": entry.CreatedDate,
    }


def _base_query():
    return select(ToolReturn).options(
        selectinload(ToolReturn.Tool),
        selectinload(ToolReturn.Loan),
        selectinload(ToolReturn.User),
        selectinload(ToolReturn.Reviewer),
    )


def list_returns(db: Session, status: str | None = None) -> list[ToolReturn]:
    stmt = _base_query()
    if status:
        if status not in RETURN_STATES:
            raise ValidationFailed(f"Unknown return status: {status}")
        stmt = stmt.where(ToolReturn.Status == status)
    stmt = stmt.order_by(ToolReturn.CreatedDate.desc(), ToolReturn.ReturnID.desc())
    return list(db.execute(stmt).scalars().all())


def list_user_returns(db: Session, user_id: int) -> list[ToolReturn]:
    stmt = (
        _base_query()
        .where(ToolReturn.UserID == user_id)
        .order_by(ToolReturn.CreatedDate.desc(), ToolReturn.ReturnID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def _lock_return(db: Session, return_id: int) -> ToolReturn:
    entry = db.execute(
        select(ToolReturn).where(ToolReturn.ReturnID == return_id).with_for_update()
    ).scalars().first()
    if not entry:
        raise NotFound("Return not found")
    return entry


def submit_return(db: Session, user_id: int, payload: SubmitReturnDto) -> ToolReturn:
    condition = (payload.condition or "").strip()
    if not condition:
        raise ValidationFailed("Loan, tool and condition are required")

    with transaction(db):
        loan = db.execute(
            select(Loan)
            .where(Loan.LoanID == payload.loanID)
            .where(Loan.UserID == user_id)
            .where(Loan.Status == LOAN_ACTIVE)
            .with_for_update()
        ).scalars().first()
        if not loan:
            raise NotFound("Loan not found or already returned")

        tool = db.get(Tool, payload.toolID)
        if not tool:
            raise NotFound("Tool not found")
        # The physical item scanned must be the one that was lent.
        if tool.ScanCode != loan.Tool.ScanCode:
            raise StateConflict("The scan code does not match the loaned tool")

        duplicate = db.execute(
            select(ToolReturn.ReturnID)
            .where(ToolReturn.LoanID == loan.LoanID)
            .where(ToolReturn.Status == PENDING)
        ).first()
        if duplicate:
            raise StateConflict("You already have a pending return for this loan")

        now = datetime.now()
        entry = ToolReturn(
            LoanID=loan.LoanID,
            ToolID=tool.ToolID,
            UserID=user_id,
            Status=PENDING,
            ReportedCondition=condition,
            UserNotes=payload.notes or None,
            SubmittedAt=now,
            CreatedDate=now,
        )
        db.add(entry)
        db.flush()
    LOGGER.info("Return %s submitted for loan %s by user %s", entry.ReturnID, loan.LoanID, user_id)
    return entry


def approve_return(
    db: Session, return_id: int, admin_id: int, new_tool_status: str | None, comment: str | None = None
) -> ToolReturn:
    """Close the loan behind a pending return and put the tool in the state the
    reviewer chose. Submission, loan and tool change together or not at all."""
    if new_tool_status not in RETURN_OUTCOMES:
        raise ValidationFailed(
            "newToolStatus must be one of: " + ", ".join(RETURN_OUTCOMES)
        )

    with transaction(db):
        entry = _lock_return(db, return_id)
        if entry.Status != PENDING:
            raise StateConflict(f"The return was already {entry.Status}")

        loan = loan_service.lock_loan(db, entry.LoanID)
        if loan.Status != LOAN_ACTIVE:
            raise StateConflict(f"The loan is already {loan.Status}")
        if loan.ToolID != entry.ToolID:
            raise StateConflict("The return does not match the loaned tool")
        tool = tool_service.lock_tool(db, loan.ToolID)

        entry.Status = APPROVED
        entry.ReviewerID = admin_id
        entry.NewToolStatus = new_tool_status
        entry.AdminNotes = comment or None
        entry.ReviewedAt = datetime.now()
        loan_service.close_loan(loan)
        db.flush()

        tool_service.transition_tool(db, tool, new_tool_status)
        log_audit(
            db,
            "return",
            entry.ReturnID,
            "approve_return",
            f"Return approved. Tool status: {new_tool_status}",
            user_id=admin_id,
        )
    LOGGER.info("Return %s approved by %s; tool %s is now %s", return_id, admin_id, entry.ToolID, new_tool_status)
    return entry


def reject_return(db: Session, return_id: int, admin_id: int, comment: str | None) -> ToolReturn:
    reason = (comment or "").strip()
    if not reason:
        raise ValidationFailed("A rejection reason is required.")

    with transaction(db):
        entry = _lock_return(db, return_id)
        if entry.Status != PENDING:
            raise StateConflict(f"The return was already {entry.Status}")
        entry.Status = REJECTED
        entry.ReviewerID = admin_id
        entry.AdminNotes = reason
        entry.ReviewedAt = datetime.now()
        log_audit(db, "return", entry.ReturnID, "reject_return", reason, user_id=admin_id)
    LOGGER.info("Return %s rejected by %s", return_id, admin_id)
    return entry
