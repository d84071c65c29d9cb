from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    useDate: date
    returnDate: date
    reason: Optional[str] = None


class ReviewDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    comment: Optional[str] = None


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    returnDate: date
    notes: Optional[str] = None


class DirectReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None


class SubmitReturnDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    loanID: int
    toolID: int
    condition: str
    notes: Optional[str] = None


class ApproveReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newToolStatus: Optional[str] = None
    comment: Optional[str] = None
