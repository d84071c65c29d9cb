from __future__ import annotations

from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tool_lending.models.lending_models import (
    LOAN_ACTIVE,
    PENDING,
    Category,
    Loan,
    LoanRequest,
    Tool,
    ToolReturn,
    User,
)


def _count(db: Session, stmt) -> int:
    return int(db.execute(stmt).scalar() or 0)


def collect_stats(db: Session, today: date | None = None) -> dict:
    today = today or date.today()
    since = datetime.combine(today - timedelta(days=7), datetime.min.time())

    by_state = db.execute(
        select(Tool.Status, func.count(Tool.ToolID)).group_by(Tool.Status).order_by(Tool.Status)
    ).all()

    tool_count = func.count(Tool.ToolID).label("toolCount")
    by_category = db.execute(
        select(Category.CategoryName, tool_count)
        .outerjoin(Tool, Tool.CategoryID == Category.CategoryID)
        .group_by(Category.CategoryID, Category.CategoryName)
        .order_by(tool_count.desc(), Category.CategoryName)
    ).all()

    request_count = func.count(LoanRequest.RequestID).label("requestCount")
    top_tools = db.execute(
        select(Tool.ToolID, Tool.ToolName, Tool.ScanCode, request_count)
        .outerjoin(LoanRequest, LoanRequest.ToolID == Tool.ToolID)
        .group_by(Tool.ToolID, Tool.ToolName, Tool.ScanCode)
        .order_by(request_count.desc(), Tool.ToolID)
        .limit(5)
    ).all()

    # Bucketed in Python so the day key is the same on every backend.
    loans_per_day: dict[str, int] = {}
    for created in db.execute(select(Loan.CreatedDate).where(Loan.CreatedDate >= since)).scalars():
        if created is None:
            continue
        key = created.date().isoformat()
        loans_per_day[key] = loans_per_day.get(key, 0) + 1

    return {
        "totalTools": _count(db, select(func.count(Tool.ToolID))),
        "totalUsers": _count(db, select(func.count(User.UserID))),
        "pendingRequests": _count(db, select(func.count(LoanRequest.RequestID)).where(LoanRequest.Status == PENDING)),
        "pendingReturns": _count(db, select(func.count(ToolReturn.ReturnID)).where(ToolReturn.Status == PENDING)),
        "activeLoans": _count(db, select(func.count(Loan.LoanID)).where(Loan.Status == LOAN_ACTIVE)),
        "toolsByStatus": [{"status": status, "count": count} for status, count in by_state],
        "toolsByCategory": [{"category": name, "count": count} for name, count in by_category],
        "topTools": [
            {"toolID": tool_id, "toolName": name, "scanCode": scan_code, "requests": count}
            for tool_id, name, scan_code, count in top_tools
        ],
        "loanTrend": [{"date": day, "count": loans_per_day[day]} for day in sorted(loans_per_day)],
    }
