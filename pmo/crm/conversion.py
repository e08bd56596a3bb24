"""Building blocks of lead conversion that do not touch the database.

The conversion itself is orchestrated by ``LeadConversionService`` in
``pmo.crm.service``; everything here is a plain value or a pure function so it
can be reasoned about and tested without a session.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence

from pmo.crm.models import CRMLead, CRMPipelineStage, LeadSource, StageType
from pmo.crm.schemas import LeadConvertRequest


CRM_LEAD_SOURCE_WEBSITE = "WEBSITE"
CRM_LEAD_SOURCE_REFERRAL = "REFERRAL"
CRM_LEAD_SOURCE_SOCIAL_MEDIA = "SOCIAL_MEDIA"
CRM_LEAD_SOURCE_EVENT = "EVENT"
CRM_LEAD_SOURCE_OUTBOUND = "OUTBOUND"
CRM_LEAD_SOURCE_PARTNER = "PARTNER"
CRM_LEAD_SOURCE_OTHER = "OTHER"

LEAD_SOURCE_TO_CRM: dict[str, str] = {
    LeadSource.WEBSITE: CRM_LEAD_SOURCE_WEBSITE,
    LeadSource.WEBSITE_CONTACT: CRM_LEAD_SOURCE_WEBSITE,
    LeadSource.REFERRAL: CRM_LEAD_SOURCE_REFERRAL,
    LeadSource.LINKEDIN: CRM_LEAD_SOURCE_SOCIAL_MEDIA,
    LeadSource.CONFERENCE: CRM_LEAD_SOURCE_EVENT,
    LeadSource.DIRECT: CRM_LEAD_SOURCE_OUTBOUND,
    LeadSource.PARTNER: CRM_LEAD_SOURCE_PARTNER,
    LeadSource.OTHER: CRM_LEAD_SOURCE_OTHER,
}

CREATED_FROM_LEAD_CONVERSION = "lead-conversion"


@dataclass(frozen=True)
class StageTemplate:
    name: str
    position: int
    probability: int
    stage_type: str
    color: str


DEFAULT_PIPELINE_STAGES: tuple[StageTemplate, ...] = (
    StageTemplate("New Lead", 1, 10, StageType.OPEN, "#3b82f6"),
    StageTemplate("Qualified", 2, 30, StageType.OPEN, "#3b82f6"),
    StageTemplate("Proposal", 3, 50, StageType.OPEN, "#3b82f6"),
    StageTemplate("Negotiation", 4, 75, StageType.OPEN, "#3b82f6"),
    StageTemplate("Closed Won", 5, 100, StageType.WON, "#22c55e"),
    StageTemplate("Closed Lost", 6, 0, StageType.LOST, "#ef4444"),
)


@dataclass(frozen=True)
class ConversionPlan:
    """Canonical conversion request with the legacy fields already folded in."""

    client_id: uuid.UUID | None = None
    create_client: bool = False
    create_contact: bool = False
    contact_role: str | None = None
    create_project: bool = False
    project_name: str | None = None
    owner_id: uuid.UUID | None = None
    create_opportunity: bool = False
    opportunity_name: str | None = None
    opportunity_amount: Decimal | None = None
    opportunity_probability: int | None = None
    expected_close_date: date | None = None


def normalize_conversion_request(dto: LeadConvertRequest) -> ConversionPlan:
    # A legacy stage or value on its own still asks for an opportunity.
    create_opportunity = dto.create_opportunity or dto.pipeline_stage is not None or dto.pipeline_value is not None
    amount = dto.opportunity_amount if dto.opportunity_amount is not None else dto.pipeline_value
    return ConversionPlan(
        client_id=dto.client_id,
        create_client=dto.create_client,
        create_contact=dto.create_contact,
        contact_role=dto.contact_role,
        create_project=dto.create_project,
        project_name=dto.project_name,
        owner_id=dto.owner_id,
        create_opportunity=create_opportunity,
        opportunity_name=dto.opportunity_name,
        opportunity_amount=amount,
        opportunity_probability=dto.opportunity_probability,
        expected_close_date=dto.expected_close_date,
    )


@dataclass(frozen=True)
class LeadSnapshot:
    id: uuid.UUID
    tenant_id: str | None
    email: str
    name: str | None
    company: str | None
    service_interest: str | None
    source: str | None
    status: str
    owner_user_id: uuid.UUID | None
    client_id: uuid.UUID | None
    primary_contact_id: uuid.UUID | None
    row_version: int

    @classmethod
    def from_model(cls, lead: CRMLead) -> LeadSnapshot:
        return cls(
            id=lead.id,
            tenant_id=lead.tenant_id,
            email=lead.email,
            name=lead.name,
            company=lead.company,
            service_interest=lead.service_interest,
            source=lead.source,
            status=lead.status,
            owner_user_id=lead.owner_user_id,
            client_id=lead.client_id,
            primary_contact_id=lead.primary_contact_id,
            row_version=lead.row_version,
        )

    @property
    def display_name(self) -> str:
        return self.company or self.email

    def default_deal_name(self) -> str:
        if self.service_interest:
            return f"{self.display_name} - {self.service_interest}"
        return self.display_name


@dataclass(frozen=True)
class ConversionContext:
    """State threaded through the conversion steps.

    Each step returns a new context with the ids it produced; nothing is
    mutated in place.
    """

    lead: LeadSnapshot
    plan: ConversionPlan
    tenant_id: str | None
    client_id: uuid.UUID | None = None
    contact_id: uuid.UUID | None = None
    project_id: uuid.UUID | None = None
    account_id: uuid.UUID | None = None
    pipeline_id: uuid.UUID | None = None
    opportunity_id: uuid.UUID | None = None
    client_created: bool = False
    contact_created: bool = False
    account_created: bool = False
    pipeline_created: bool = False

    def resolve_owner_id(self) -> uuid.UUID | None:
        return self.plan.owner_id or self.lead.owner_user_id

    def produced_ids(self) -> dict[str, str | None]:
        return {
            "client_id": _str_or_none(self.client_id),
            "contact_id": _str_or_none(self.contact_id),
            "project_id": _str_or_none(self.project_id),
            "account_id": _str_or_none(self.account_id),
            "opportunity_id": _str_or_none(self.opportunity_id),
        }


def map_lead_source(source: str | None) -> str | None:
    if source is None:
        return None
    return LEAD_SOURCE_TO_CRM[source]


def compute_weighted_amount(amount: Decimal | None, probability: int | None) -> Decimal | None:
    if amount is None or probability is None:
        return None
    return Decimal(amount) * Decimal(probability) / Decimal(100)


def select_initial_stage(stages: Sequence[CRMPipelineStage]) -> CRMPipelineStage | None:
    ordered = sorted(stages, key=lambda stage: stage.position)
    for stage in ordered:
        if stage.stage_type == StageType.OPEN:
            return stage
    # No OPEN stage: fall back to the first stage whatever its type.
    return ordered[0] if ordered else None


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None
