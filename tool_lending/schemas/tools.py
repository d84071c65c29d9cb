from typing import Optional

from pydantic import BaseModel, ConfigDict


class ToolCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scanCode: str
    toolName: str
    description: Optional[str] = None
    categoryID: Optional[int] = None
    location: Optional[str] = None
    imageUrl: Optional[str] = None


class ToolUpdate(BaseModel):
    """Partial update: only fields present in the request body are applied."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolName: Optional[str] = None
    description: Optional[str] = None
    categoryID: Optional[int] = None
    status: Optional[str] = None
    location: Optional[str] = None
    imageUrl: Optional[str] = None


class CategoryCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    categoryName: str
    description: Optional[str] = None
