from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


LeadStatusValue = Literal["NEW", "CONTACTED", "QUALIFIED", "DISQUALIFIED", "CONVERTED"]
LeadSourceValue = Literal[
    "WEBSITE",
    "WEBSITE_CONTACT",
    "REFERRAL",
    "LINKEDIN",
    "CONFERENCE",
    "DIRECT",
    "PARTNER",
    "OTHER",
]


class LeadCreate(BaseModel):
    email: EmailStr
    name: str | None = None
    company: str | None = None
    service_interest: str | None = None
    message: str | None = None
    source: LeadSourceValue | None = "WEBSITE_CONTACT"
    status: LeadStatusValue = "NEW"
    owner_user_id: UUID | None = None


class LeadUpdate(BaseModel):
    email: EmailStr | None = None
    name: str | None = None
    company: str | None = None
    service_interest: str | None = None
    message: str | None = None
    source: LeadSourceValue | None = None
    status: LeadStatusValue | None = None
    owner_user_id: UUID | None = None

    @model_validator(mode="after")
    def reject_null_required_fields(self) -> "LeadUpdate":
        for field_name in ("email", "status"):
            if field_name in self.model_fields_set and getattr(self, field_name) is None:
                raise ValueError(f"{field_name} cannot be null")
        return self


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str | None
    email: str
    name: str | None
    company: str | None
    service_interest: str | None
    message: str | None
    source: str | None
    status: str
    owner_user_id: UUID | None
    client_id: UUID | None
    primary_contact_id: UUID | None
    converted_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadConvertRequest(BaseModel):
    """Conversion options. Every flag defaults to doing nothing.

    ``pipeline_stage`` and ``pipeline_value`` are the legacy way of asking for
    an opportunity; they are folded into ``create_opportunity`` and
    ``opportunity_amount`` before the conversion runs.
    """

    client_id: UUID | None = None
    create_client: bool = False
    create_contact: bool = False
    contact_role: str | None = None
    create_project: bool = False
    project_name: str | None = None
    owner_id: UUID | None = None
    create_opportunity: bool = False
    pipeline_stage: str | None = None
    pipeline_value: Decimal | None = Field(default=None, ge=0)
    opportunity_name: str | None = None
    opportunity_amount: Decimal | None = Field(default=None, ge=0)
    opportunity_probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None


class LeadConversionResult(BaseModel):
    lead: LeadRead
    client_id: UUID | None = None
    contact_id: UUID | None = None
    project_id: UUID | None = None
    account_id: UUID | None = None
    opportunity_id: UUID | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    probability: int
    stage_type: str
    color: str | None


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    is_default: bool
    is_active: bool
    created_at: datetime
    stages: list[PipelineStageRead] = Field(default_factory=list)
