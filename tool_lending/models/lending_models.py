from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, String, event
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tool_lending.db.base import Base


ROLE_USER = "usuario"
ROLE_TEACHER = "docente"
ROLE_ADMIN = "admin"
USER_ROLES = {ROLE_USER, ROLE_TEACHER, ROLE_ADMIN}

TOOL_AVAILABLE = "available"
TOOL_LOANED = "loaned"
TOOL_MAINTENANCE = "maintenance"
TOOL_DECOMMISSIONED = "decommissioned"
TOOL_STATES = {TOOL_AVAILABLE, TOOL_LOANED, TOOL_MAINTENANCE, TOOL_DECOMMISSIONED}

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
CANCELLED = "cancelled"
REQUEST_STATES = {PENDING, APPROVED, REJECTED, CANCELLED}
RETURN_STATES = {PENDING, APPROVED, REJECTED}

LOAN_ACTIVE = "active"
LOAN_RETURNED = "returned"
LOAN_STATES = {LOAN_ACTIVE, LOAN_RETURNED}


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    FullName = Column(String(200), nullable=False)
    Email = Column(String(255), nullable=False, unique=True)
    Phone = Column(String(50))
    Role = Column(String(20), nullable=False, default=ROLE_USER)
    PasswordHash = Column(String(256), nullable=False)
    PasswordSalt = Column(String(64), nullable=False)
    ResetCode = Column(String(12))
    ResetCodeExpires = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Requests = relationship(
        "LoanRequest",
        foreign_keys="LoanRequest.UserID",
        back_populates="User",
        cascade="all, delete-orphan",
    )
    Loans = relationship(
        "Loan",
        foreign_keys="Loan.UserID",
        back_populates="User",
        cascade="all, delete-orphan",
    )


class Category(Base):
    __tablename__ = "Categories"

    CategoryID = Column(Integer, primary_key=True)
    CategoryName = Column(String(100), nullable=False, unique=True)
    Description = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())

    Tools = relationship("Tool", back_populates="Category")


class Tool(Base):
    __tablename__ = "Tools"

    ToolID = Column(Integer, primary_key=True)
    ScanCode = Column(String(100), nullable=False, unique=True)
    ToolName = Column(String(255), nullable=False)
    Description = Column(String(1000))
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID", ondelete="SET NULL"))
    Status = Column(String(20), nullable=False, default=TOOL_AVAILABLE)
    Location = Column(String(255))
    ImageUrl = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Category = relationship("Category", back_populates="Tools")
    Requests = relationship("LoanRequest", back_populates="Tool", cascade="all, delete-orphan")
    Loans = relationship("Loan", back_populates="Tool", cascade="all, delete-orphan")
    Returns = relationship("ToolReturn", back_populates="Tool", cascade="all, delete-orphan")


class LoanRequest(Base):
    __tablename__ = "Requests"

    RequestID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID", ondelete="CASCADE"), nullable=False)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="CASCADE"), nullable=False)
    Status = Column(String(20), nullable=False, default=PENDING)
    UseDate = Column(Date, nullable=False)
    ReturnDate = Column(Date, nullable=False)
    Reason = Column(String(1000))
    ReviewerID = Column(Integer, ForeignKey("Users.UserID", ondelete="SET NULL"))
    ReviewedAt = Column(DateTime)
    AdminComment = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())

    User = relationship("User", foreign_keys=[UserID], back_populates="Requests")
    Reviewer = relationship("User", foreign_keys=[ReviewerID])
    Tool = relationship("Tool", back_populates="Requests")


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("Requests.RequestID", ondelete="SET NULL"))
    UserID = Column(Integer, ForeignKey("Users.UserID", ondelete="CASCADE"), nullable=False)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="CASCADE"), nullable=False)
    ApproverID = Column(Integer, ForeignKey("Users.UserID", ondelete="SET NULL"))
    Status = Column(String(20), nullable=False, default=LOAN_ACTIVE)
    LoanDate = Column(Date, nullable=False)
    ApprovedAt = Column(DateTime)
    EstimatedReturnDate = Column(Date, nullable=False)
    ActualReturnDate = Column(DateTime)
    Notes = Column(String(2000))
    CreatedDate = Column(DateTime, server_default=func.now())

    User = relationship("User", foreign_keys=[UserID], back_populates="Loans")
    Approver = relationship("User", foreign_keys=[ApproverID])
    Tool = relationship("Tool", back_populates="Loans")
    Request = relationship("LoanRequest")
    Returns = relationship("ToolReturn", back_populates="Loan", cascade="all, delete-orphan")


class ToolReturn(Base):
    __tablename__ = "Returns"

    ReturnID = Column(Integer, primary_key=True)
    LoanID = Column(Integer, ForeignKey("Loans.LoanID", ondelete="CASCADE"), nullable=False)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="CASCADE"), nullable=False)
    UserID = Column(Integer, ForeignKey("Users.UserID", ondelete="CASCADE"), nullable=False)
    Status = Column(String(20), nullable=False, default=PENDING)
    ReportedCondition = Column(String(100), nullable=False)
    UserNotes = Column(String(1000))
    SubmittedAt = Column(DateTime)
    ReviewerID = Column(Integer, ForeignKey("Users.UserID", ondelete="SET NULL"))
    NewToolStatus = Column(String(20))
    AdminNotes = Column(String(1000))
    ReviewedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())

    Loan = relationship("Loan", back_populates="Returns")
    Tool = relationship("Tool", back_populates="Returns")
    User = relationship("User", foreign_keys=[UserID])
    Reviewer = relationship("User", foreign_keys=[ReviewerID])


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


# Partial unique indexes back the workflow guards; MySQL has no partial indexes.
_PARTIAL_INDEX_DIALECTS = ("sqlite", "postgresql")

Index(
    "ux_loans_one_active_per_tool",
    Loan.ToolID,
    unique=True,
    sqlite_where=Loan.Status == LOAN_ACTIVE,
    postgresql_where=Loan.Status == LOAN_ACTIVE,
).ddl_if(dialect=_PARTIAL_INDEX_DIALECTS)

Index(
    "ux_requests_one_pending_per_user_tool",
    LoanRequest.UserID,
    LoanRequest.ToolID,
    unique=True,
    sqlite_where=LoanRequest.Status == PENDING,
    postgresql_where=LoanRequest.Status == PENDING,
).ddl_if(dialect=_PARTIAL_INDEX_DIALECTS)

Index(
    "ux_returns_one_pending_per_loan",
    ToolReturn.LoanID,
    unique=True,
    sqlite_where=ToolReturn.Status == PENDING,
    postgresql_where=ToolReturn.Status == PENDING,
).ddl_if(dialect=_PARTIAL_INDEX_DIALECTS)


@event.listens_for(AuditLog, "before_update")
def _audit_log_is_append_only(mapper, connection, target):
    raise RuntimeError("AuditLogs rows are append-only.")


@event.listens_for(AuditLog, "before_delete")
def _audit_log_is_never_deleted(mapper, connection, target):
    raise RuntimeError("AuditLogs rows are append-only.")
