from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from tool_lending.db.session import transaction
from tool_lending.models.lending_models import (
    LOAN_ACTIVE,
    LOAN_RETURNED,
    LOAN_STATES,
    ROLE_ADMIN,
    TOOL_AVAILABLE,
    TOOL_LOANED,
    Loan,
    Tool,
)
from tool_lending.schemas.lending import CreateLoanDto
from tool_lending.services import tool_service
from tool_lending.services.audit_service import log_audit
from tool_lending.services.errors import AccessDenied, NotFound, StateConflict, ValidationFailed


LOGGER = logging.getLogger("tool_lending.workflow")


def serialize_loan(loan: Loan) -> dict:
    tool = loan.Tool
    return {
        "loanID": loan.LoanID,
        "requestID": loan.RequestID,
        "userID": loan.UserID,
        "userName": loan.User.FullName if loan.User else None,
        "userEmail": loan.User.Email if loan.User else None,
        "toolID": loan.ToolID,
        "toolName": tool.ToolName if tool else None,
        "scanCode": tool.ScanCode if tool else None,
        "imageUrl": tool.ImageUrl if tool else None,
        "toolStatus": tool.Status if tool else None,
        "approverID": loan.ApproverID,
        "approverName": loan.Approver.FullName if loan.Approver else None,
        "status": loan.Status,
        "loanDate": loan.LoanDate,
        "approvedAt": loan.ApprovedAt,
        "estimatedReturnDate": loan.EstimatedReturnDate,
        "actualReturnDate": loan.ActualReturnDate,
        "notes": loan.Notes,
        "createdDate": loan.CreatedDate,
    }


def _base_query():
    return select(Loan).options(
        selectinload(Loan.Tool),
        selectinload(Loan.User),
        selectinload(Loan.Approver),
    )


def list_loans(db: Session, status: str | None = None) -> list[Loan]:
    stmt = _base_query()
    if status:
        if status not in LOAN_STATES:
            raise ValidationFailed(f"Unknown loan status: {status}")
        stmt = stmt.where(Loan.Status == status)
    stmt = stmt.order_by(Loan.CreatedDate.desc(), Loan.LoanID.desc())
    return list(db.execute(stmt).scalars().all())


def list_active_loans(db: Session) -> list[Loan]:
    stmt = (
        _base_query()
        .where(Loan.Status == LOAN_ACTIVE)
        .order_by(Loan.EstimatedReturnDate.asc(), Loan.LoanID.asc())
    )
    return list(db.execute(stmt).scalars().all())


def list_user_loans(db: Session, user_id: int, active_only: bool = False) -> list[Loan]:
    stmt = _base_query().where(Loan.UserID == user_id)
    if active_only:
        stmt = stmt.where(Loan.Status == LOAN_ACTIVE)
    stmt = stmt.order_by(Loan.CreatedDate.desc(), Loan.LoanID.desc())
    return list(db.execute(stmt).scalars().all())


def get_loan_or_404(db: Session, loan_id: int) -> Loan:
    loan = db.get(Loan, loan_id)
    if not loan:
        raise NotFound("Loan not found")
    return loan


def find_active_loan_by_scan_code(db: Session, scan_code: str, user_id: int) -> Loan:
    loan = db.execute(
        _base_query()
        .join(Tool, Tool.ToolID == Loan.ToolID)
        .where(Tool.ScanCode == scan_code)
        .where(Loan.UserID == user_id)
        .where(Loan.Status == LOAN_ACTIVE)
        .order_by(Loan.CreatedDate.desc())
    ).scalars().first()
    if not loan:
        raise NotFound("You have no active loan for this tool")
    return loan


def lock_loan(db: Session, loan_id: int) -> Loan:
    loan = db.execute(select(Loan).where(Loan.LoanID == loan_id).with_for_update()).scalars().first()
    if not loan:
        raise NotFound("Loan not found")
    return loan


def close_loan(loan: Loan, notes: str | None = None) -> None:
    loan.Status = LOAN_RETURNED
    loan.ActualReturnDate = datetime.now()
    if notes:
        loan.Notes = (loan.Notes + " | " if loan.Notes else "") + notes


def add_active_loan(db: Session, loan: Loan) -> None:
    """Insert an active loan. The partial unique index on active loans decides
    races the row lock cannot (SQLite ignores FOR UPDATE)."""
    db.add(loan)
    try:
        db.flush()
    except IntegrityError:
        LOGGER.warning("Active loan insert for tool %s lost a race", loan.ToolID)
        raise StateConflict(f"The tool is no longer available. Current state: {TOOL_LOANED}") from None


def create_direct_loan(db: Session, user_id: int, payload: CreateLoanDto) -> Loan:
    """Scan-to-borrow: lend an available tool without a prior request."""
    with transaction(db):
        tool = tool_service.lock_tool(db, payload.toolID)
        if tool.Status != TOOL_AVAILABLE:
            raise StateConflict(f"The tool is not available. Current state: {tool.Status}")

        now = datetime.now()
        loan = Loan(
            UserID=user_id,
            ToolID=tool.ToolID,
            Status=LOAN_ACTIVE,
            LoanDate=date.today(),
            EstimatedReturnDate=payload.returnDate,
            Notes=payload.notes or None,
            CreatedDate=now,
        )
        add_active_loan(db, loan)

        tool_service.transition_tool(db, tool, TOOL_LOANED)
        log_audit(db, "loan", loan.LoanID, "create_loan", f"Direct loan of tool {tool.ScanCode}", user_id=user_id)
    LOGGER.info("Direct loan %s opened by user %s for tool %s", loan.LoanID, user_id, payload.toolID)
    return loan


def return_loan_direct(
    db: Session, loan_id: int, actor_id: int, actor_role: str, notes: str | None = None
) -> Loan:
    """Close a loan without a reviewed return submission.

    The tool always goes back to ``available``; the reviewed path in
    return_service lets the admin pick the resulting state instead.
    """
    with transaction(db):
        loan = lock_loan(db, loan_id)
        if actor_role != ROLE_ADMIN and loan.UserID != actor_id:
            raise AccessDenied("You are not allowed to return this loan")
        if loan.Status != LOAN_ACTIVE:
            raise StateConflict("The loan was already returned")

        tool = tool_service.lock_tool(db, loan.ToolID)
        close_loan(loan, f"Return: {notes or 'No notes'}")
        db.flush()

        tool_service.transition_tool(db, tool, TOOL_AVAILABLE)
        log_audit(db, "loan", loan.LoanID, "return_loan_direct", notes or "No notes", user_id=actor_id)
    LOGGER.info("Loan %s returned directly by %s", loan_id, actor_id)
    return loan
