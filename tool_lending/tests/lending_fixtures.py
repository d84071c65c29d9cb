from datetime import date, datetime

from sqlalchemy import func, select

from tool_lending.db.session import Storage
from tool_lending.models.lending_models import (
    ROLE_ADMIN,
    ROLE_USER,
    TOOL_AVAILABLE,
    AuditLog,
    Category,
    Tool,
    User,
)
from tool_lending.services import user_service


MEMORY_DB_URL = "sqlite+pysqlite:///:memory:"
DEFAULT_PASSWORD = "secret123"
USE_DATE = date(2024, 6, 1)
RETURN_DATE = date(2024, 6, 5)


def make_storage(url: str = MEMORY_DB_URL) -> Storage:
    return Storage(url, create_schema=True).init()


def add_user(db, email: str, role: str = ROLE_USER, name: str | None = None, password: str = DEFAULT_PASSWORD) -> User:
    user = User(
        FullName=name or email.split("@")[0].title(),
        Email=email,
        Role=role,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    user_service.set_password(user, password)
    db.add(user)
    db.commit()
    return user


def add_admin(db, email: str = "admin@example.com") -> User:
    return add_user(db, email, role=ROLE_ADMIN, name="Admin")


def add_category(db, name: str = "Power tools") -> Category:
    category = Category(CategoryName=name, CreatedDate=datetime.now())
    db.add(category)
    db.commit()
    return category


def add_tool(db, scan_code: str, status: str = TOOL_AVAILABLE, name: str | None = None, category: Category | None = None) -> Tool:
    tool = Tool(
        ScanCode=scan_code,
        ToolName=name or f"Tool {scan_code}",
        Status=status,
        CategoryID=category.CategoryID if category else None,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(tool)
    db.commit()
    return tool


def count_rows(db, model, *criteria) -> int:
    stmt = select(func.count()).select_from(model)
    for criterion in criteria:
        stmt = stmt.where(criterion)
    return int(db.execute(stmt).scalar() or 0)


def audit_actions(db) -> list[str]:
    return list(db.execute(select(AuditLog.Action).order_by(AuditLog.AuditID)).scalars().all())
