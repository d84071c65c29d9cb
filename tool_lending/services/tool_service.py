from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from tool_lending.db.session import transaction
from tool_lending.models.lending_models import (
    LOAN_ACTIVE,
    TOOL_AVAILABLE,
    TOOL_DECOMMISSIONED,
    TOOL_LOANED,
    TOOL_MAINTENANCE,
    Category,
    Loan,
    Tool,
)
from tool_lending.schemas.tools import CategoryCreate, ToolCreate, ToolUpdate
from tool_lending.services.audit_service import log_audit
from tool_lending.services.errors import NotFound, StateConflict, ValidationFailed


LOGGER = logging.getLogger("tool_lending.workflow")

# Lending transitions. Leaving maintenance/decommissioned goes through update_tool.
TOOL_TRANSITIONS = {
    TOOL_AVAILABLE: {TOOL_LOANED},
    TOOL_LOANED: {TOOL_AVAILABLE, TOOL_MAINTENANCE, TOOL_DECOMMISSIONED},
    TOOL_MAINTENANCE: set(),
    TOOL_DECOMMISSIONED: set(),
}
ADMIN_SETTABLE_STATES = {TOOL_AVAILABLE, TOOL_MAINTENANCE, TOOL_DECOMMISSIONED}
DELETABLE_STATES = {TOOL_AVAILABLE, TOOL_DECOMMISSIONED}

# Applied in this order regardless of the order fields arrive in.
TOOL_UPDATE_FIELDS = ("toolName", "description", "categoryID", "status", "location", "imageUrl")


def _map_tool_field(field: str) -> str:
    mapping = {
        "scanCode": "ScanCode",
        "toolName": "ToolName",
        "description": "Description",
        "categoryID": "CategoryID",
        "status": "Status",
        "location": "Location",
        "imageUrl": "ImageUrl",
    }
    return mapping.get(field, field)


def serialize_tool(tool: Tool) -> dict:
    return {
        "toolID": tool.ToolID,
        "scanCode": tool.ScanCode,
        "toolName": tool.ToolName,
        "description": tool.Description,
        "categoryID": tool.CategoryID,
        "categoryName": tool.Category.CategoryName if tool.Category else None,
        "status": tool.Status,
        "location": tool.Location,
        "imageUrl": tool.ImageUrl,
        "createdDate": tool.CreatedDate,
        "updatedDate": tool.UpdatedDate,
    }


def serialize_category(category: Category) -> dict:
    return {
        "categoryID": category.CategoryID,
        "categoryName": category.CategoryName,
        "description": category.Description,
    }


def list_tools(db: Session) -> list[Tool]:
    stmt = (
        select(Tool)
        .options(selectinload(Tool.Category))
        .order_by(Tool.CreatedDate.desc(), Tool.ToolID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def get_tool_or_404(db: Session, tool_id: int) -> Tool:
    tool = db.get(Tool, tool_id)
    if not tool:
        raise NotFound("Tool not found")
    return tool


def get_tool_by_scan_code(db: Session, scan_code: str) -> Tool:
    tool = db.execute(select(Tool).where(Tool.ScanCode == scan_code)).scalars().first()
    if not tool:
        raise NotFound("No tool found with that scan code")
    return tool


def lock_tool(db: Session, tool_id: int) -> Tool:
    """Read the tool row for update so concurrent lenders serialize on it."""
    tool = db.execute(
        select(Tool).where(Tool.ToolID == tool_id).with_for_update()
    ).scalars().first()
    if not tool:
        raise NotFound("Tool not found")
    return tool


def has_active_loan(db: Session, tool_id: int) -> bool:
    count = db.execute(
        select(func.count(Loan.LoanID))
        .where(Loan.ToolID == tool_id)
        .where(Loan.Status == LOAN_ACTIVE)
    ).scalar()
    return bool(count)


def transition_tool(db: Session, tool: Tool, new_state: str) -> None:
    current = tool.Status
    if new_state not in TOOL_TRANSITIONS.get(current, set()):
        raise StateConflict(f"Invalid tool state transition: {current} -> {new_state}")
    tool.Status = new_state
    tool.UpdatedDate = datetime.now()
    db.flush()
    LOGGER.info("Tool %s transitioned %s -> %s", tool.ToolID, current, new_state)


def create_tool(db: Session, payload: ToolCreate, actor_id: int | None) -> Tool:
    scan_code = (payload.scanCode or "").strip()
    tool_name = (payload.toolName or "").strip()
    if not scan_code or not tool_name:
        raise ValidationFailed("Scan code and tool name are required")

    with transaction(db):
        existing = db.execute(select(Tool.ToolID).where(Tool.ScanCode == scan_code)).first()
        if existing:
            raise ValidationFailed("A tool with that scan code already exists")
        if payload.categoryID is not None and not db.get(Category, payload.categoryID):
            raise NotFound("Category not found")

        tool = Tool(
            ScanCode=scan_code,
            ToolName=tool_name,
            Description=payload.description,
            CategoryID=payload.categoryID,
            Status=TOOL_AVAILABLE,
            Location=payload.location,
            ImageUrl=payload.imageUrl,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        db.add(tool)
        db.flush()
        log_audit(db, "tool", tool.ToolID, "create_tool", f"Tool created: {scan_code}", user_id=actor_id)
    return tool


def update_tool(db: Session, tool_id: int, payload: ToolUpdate, actor_id: int | None) -> Tool:
    data = payload.model_dump(exclude_unset=True)
    if not data:
        raise ValidationFailed("No fields to update")
    with transaction(db):
        tool = lock_tool(db, tool_id)
        changed: list[str] = []
        for field in TOOL_UPDATE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field == "toolName":
                value = (value or "").strip()
                if not value:
                    raise ValidationFailed("Tool name cannot be empty")
            if field == "categoryID" and value is not None and not db.get(Category, value):
                raise NotFound("Category not found")
            if field == "status":
                if value == tool.Status:
                    continue
                if value not in ADMIN_SETTABLE_STATES:
                    raise ValidationFailed(
                        "Status must be one of: " + ", ".join(sorted(ADMIN_SETTABLE_STATES))
                    )
                if tool.Status == TOOL_LOANED:
                    raise StateConflict("Cannot change the status of a tool that is currently loaned")
            setattr(tool, _map_tool_field(field), value)
            changed.append(field)

        if not changed:
            raise ValidationFailed("No fields to update")
        tool.UpdatedDate = datetime.now()
        log_audit(
            db,
            "tool",
            tool.ToolID,
            "update_tool",
            f"Fields: {', '.join(changed)}; status={tool.Status}",
            user_id=actor_id,
        )
    return tool


def delete_tool(db: Session, tool_id: int, actor_id: int | None) -> None:
    with transaction(db):
        tool = lock_tool(db, tool_id)
        if tool.Status == TOOL_LOANED:
            raise StateConflict("Cannot delete. The tool is currently loaned")
        if tool.Status not in DELETABLE_STATES:
            raise StateConflict(f"Cannot delete. Current state: {tool.Status}")
        if has_active_loan(db, tool_id):
            raise StateConflict("Cannot delete. The tool has active loans")

        details = f"Tool deleted: {tool.ScanCode} ({tool.ToolName})"
        db.delete(tool)
        log_audit(db, "tool", tool_id, "delete_tool", details, user_id=actor_id)
    LOGGER.info("Tool %s deleted by %s", tool_id, actor_id)


def list_categories(db: Session) -> list[Category]:
    return list(db.execute(select(Category).order_by(Category.CategoryName)).scalars().all())


def create_category(db: Session, payload: CategoryCreate, actor_id: int | None) -> Category:
    name = (payload.categoryName or "").strip()
    if not name:
        raise ValidationFailed("Category name is required")
    with transaction(db):
        existing = db.execute(select(Category.CategoryID).where(Category.CategoryName == name)).first()
        if existing:
            raise ValidationFailed("A category with that name already exists")
        category = Category(CategoryName=name, Description=payload.description, CreatedDate=datetime.now())
        db.add(category)
        db.flush()
        log_audit(db, "category", category.CategoryID, "create_category", name, user_id=actor_id)
    return category
