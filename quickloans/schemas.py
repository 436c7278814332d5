"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- Dashboard variants (end user / admin)
"""

from datetime import date, datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from quickloans.models import LOAN_TERMS
from quickloans.utils import age_on

EmploymentStatus = Literal["employed", "self-employed", "unemployed", "retired"]
LoanStatus = Literal["pending", "approved", "rejected"]

MIN_AGE = 18


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ProfileUpsert(BaseModel):
    """
    Profile form submission.

    Validates:
    - full_name: at least 2 characters
    - phone: at least 10 characters
    - address: at least 5 characters
    - date_of_birth: at least 18 years ago
    - monthly_income: greater than 0
    """
    full_name: str = Field(..., description="Full name")
    address: str = Field(..., description="Postal address")
    phone: str = Field(..., description="Phone number")
    date_of_birth: date = Field(..., description="Date of birth (YYYY-MM-DD)")
    employment_status: EmploymentStatus = Field("employed", description="Employment status")
    monthly_income: float = Field(..., description="Monthly income")

    @field_validator("full_name", "address", "phone")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v: str) -> str:
        if len(v) < 2:
            raise ValueError("Full name must be at least 2 characters long")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if len(v) < 10:
            raise ValueError("Phone number must be at least 10 characters long")
        return v

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if len(v) < 5:
            raise ValueError("Address must be at least 5 characters long")
        return v

    @field_validator("date_of_birth")
    @classmethod
    def validate_age(cls, v: date) -> date:
        if age_on(v) < MIN_AGE:
            raise ValueError("You must be at least 18 years old")
        return v

    @field_validator("monthly_income")
    @classmethod
    def validate_income(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Monthly income must be greater than 0")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "full_name": "Jane Wanjiru",
                    "address": "Moi Avenue, Nairobi",
                    "phone": "+254711000111",
                    "date_of_birth": "1990-04-12",
                    "employment_status": "employed",
                    "monthly_income": 85000,
                }
            ]
        }
    }


class LoanApplicationCreate(BaseModel):
    """Loan application form. Status is always set to pending by the store."""
    amount: float = Field(..., gt=0, description="Requested amount")
    purpose: str = Field(..., description="Purpose of the loan")
    term_months: int = Field(12, description="Loan term in months")
    monthly_income: float = Field(..., ge=0, description="Monthly income at application time")
    employment_status: EmploymentStatus = Field("employed", description="Employment status at application time")

    @field_validator("purpose")
    @classmethod
    def validate_purpose(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Purpose is required")
        return v

    @field_validator("term_months")
    @classmethod
    def validate_term(cls, v: int) -> int:
        if v not in LOAN_TERMS:
            raise ValueError(f"term_months must be one of {', '.join(str(t) for t in LOAN_TERMS)}")
        return v


class LoanStatusUpdate(BaseModel):
    status: Literal["approved", "rejected"]


class SendMessageRequest(BaseModel):
    message: str = Field("", max_length=4096, description="Message body")
    attachment_url: Optional[str] = Field(None, description="Public URL of an uploaded attachment")
    attachment_type: Optional[str] = Field(None, description="Attachment content type")


class TypingUpdate(BaseModel):
    is_typing: bool


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ProfileResponse(BaseModel):
    id: str
    user_id: str
    full_name: str
    address: str
    phone: str
    date_of_birth: date
    employment_status: str
    monthly_income: float
    is_admin: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ApplicantSummary(BaseModel):
    full_name: str
    phone: str
    address: str
    employment_status: str
    monthly_income: float

    model_config = {"from_attributes": True}


class LoanApplicationResponse(BaseModel):
    id: str
    user_id: str
    amount: float
    purpose: str
    term_months: int
    monthly_income: float
    employment_status: str
    status: LoanStatus
    created_at: datetime
    updated_at: datetime
    applicant: Optional[ApplicantSummary] = None

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    id: str
    user_id: str
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ChatMessageResponse(BaseModel):
    id: int
    conversation_id: str
    user_id: str
    message: str
    is_support: bool
    attachment_url: Optional[str] = None
    attachment_type: Optional[str] = None
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TypingStatusResponse(BaseModel):
    conversation_id: str
    user_id: str
    is_typing: bool
    last_updated: datetime

    model_config = {"from_attributes": True}


class AttachmentResponse(BaseModel):
    url: str
    path: str
    content_type: str
    size: int


# =============================================================================
# Dashboard Variants
# =============================================================================

class EndUserDashboard(BaseModel):
    kind: Literal["end_user"] = "end_user"
    profile: Optional[ProfileResponse] = None
    profile_complete: bool
    applications: List[LoanApplicationResponse] = Field(default_factory=list)


class AdminDashboard(BaseModel):
    kind: Literal["admin"] = "admin"
    profile: ProfileResponse
    applications: List[LoanApplicationResponse] = Field(default_factory=list)
    users: List[ProfileResponse] = Field(default_factory=list)
    conversations: List[ConversationResponse] = Field(default_factory=list)


DashboardResponse = Annotated[Union[EndUserDashboard, AdminDashboard], Field(discriminator="kind")]
