from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pmo.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeadStatus:
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    DISQUALIFIED = "DISQUALIFIED"
    CONVERTED = "CONVERTED"

    ALL = frozenset({NEW, CONTACTED, QUALIFIED, DISQUALIFIED, CONVERTED})


class LeadSource:
    WEBSITE = "WEBSITE"
    WEBSITE_CONTACT = "WEBSITE_CONTACT"
    REFERRAL = "REFERRAL"
    LINKEDIN = "LINKEDIN"
    CONFERENCE = "CONFERENCE"
    DIRECT = "DIRECT"
    PARTNER = "PARTNER"
    OTHER = "OTHER"

    ALL = frozenset({WEBSITE, WEBSITE_CONTACT, REFERRAL, LINKEDIN, CONFERENCE, DIRECT, PARTNER, OTHER})


class StageType:
    OPEN = "OPEN"
    WON = "WON"
    LOST = "LOST"


class CRMClient(Base):
    __tablename__ = "crm_client"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    industry: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    contacts: Mapped[list[CRMContact]] = relationship("CRMContact", back_populates="client")


class CRMContact(Base):
    __tablename__ = "crm_contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_client.id", ondelete="RESTRICT"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    client: Mapped[CRMClient] = relationship("CRMClient", back_populates="contacts")


class CRMProject(Base):
    __tablename__ = "crm_project"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_client.id", ondelete="RESTRICT"),
        nullable=False,
    )
    owner_user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PLANNING", server_default="PLANNING")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CRMLead(Base):
    __tablename__ = "crm_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    service_interest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=LeadStatus.NEW, server_default=LeadStatus.NEW)
    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_client.id", ondelete="SET NULL"),
        nullable=True,
    )
    primary_contact_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="SET NULL"),
        nullable=True,
    )
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    client: Mapped[CRMClient | None] = relationship("CRMClient")
    primary_contact: Mapped[CRMContact | None] = relationship("CRMContact")


class CRMAccount(Base):
    __tablename__ = "crm_account"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    industry: Mapped[str | None] = mapped_column(Text, nullable=True)
    account_type: Mapped[str] = mapped_column(String(32), nullable=False, default="PROSPECT", server_default="PROSPECT")
    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    # Explicit link to the delivery-side client; custom_fields keeps the provenance copy.
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_client.id", ondelete="SET NULL"),
        nullable=True,
    )
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    opportunities: Mapped[list[CRMOpportunity]] = relationship("CRMOpportunity", back_populates="account")


class CRMPipeline(Base):
    __tablename__ = "crm_pipeline"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    stages: Mapped[list[CRMPipelineStage]] = relationship(
        "CRMPipelineStage",
        back_populates="pipeline",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CRMPipelineStage.position",
    )


class CRMPipelineStage(Base):
    __tablename__ = "crm_pipeline_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_pipeline.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    stage_type: Mapped[str] = mapped_column(String(16), nullable=False, default=StageType.OPEN)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    pipeline: Mapped[CRMPipeline] = relationship("CRMPipeline", back_populates="stages")

    __table_args__ = (
        UniqueConstraint("pipeline_id", "position", name="uq_crm_pipeline_stage_pipeline_position"),
        UniqueConstraint("pipeline_id", "name", name="uq_crm_pipeline_stage_pipeline_name"),
    )


class CRMOpportunity(Base):
    __tablename__ = "crm_opportunity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_account.id", ondelete="RESTRICT"),
        nullable=False,
    )
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_pipeline.id", ondelete="RESTRICT"),
        nullable=False,
    )
    stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_pipeline_stage.id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    probability: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weighted_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN", server_default="OPEN")
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    owner_user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    account: Mapped[CRMAccount] = relationship("CRMAccount", back_populates="opportunities")
    stage: Mapped[CRMPipelineStage] = relationship("CRMPipelineStage")
    stage_history: Mapped[list[CRMOpportunityStageHistory]] = relationship(
        "CRMOpportunityStageHistory",
        back_populates="opportunity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class CRMOpportunityStageHistory(Base):
    __tablename__ = "crm_opportunity_stage_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    opportunity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_opportunity.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_pipeline_stage.id", ondelete="RESTRICT"),
        nullable=True,
    )
    to_stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_pipeline_stage.id", ondelete="RESTRICT"),
        nullable=False,
    )
    changed_by_user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    opportunity: Mapped[CRMOpportunity] = relationship("CRMOpportunity", back_populates="stage_history")


Index("ix_crm_lead_scope_filter", CRMLead.tenant_id, CRMLead.status, CRMLead.owner_user_id, CRMLead.created_at)
Index("ix_crm_lead_email", CRMLead.email)
Index("ix_crm_contact_client_id", CRMContact.client_id)
Index("ix_crm_project_client_id", CRMProject.client_id)
Index("ix_crm_account_tenant_client", CRMAccount.tenant_id, CRMAccount.client_id)
Index("ix_crm_account_tenant_name", CRMAccount.tenant_id, CRMAccount.name)
Index(
    "uq_crm_pipeline_default_per_tenant",
    CRMPipeline.tenant_id,
    unique=True,
    postgresql_where=CRMPipeline.is_default.is_(True),
    sqlite_where=CRMPipeline.is_default.is_(True),
)
Index("ix_crm_pipeline_stage_pipeline_id", CRMPipelineStage.pipeline_id)
Index("ix_crm_opportunity_account_id", CRMOpportunity.account_id)
Index("ix_crm_opportunity_tenant_stage", CRMOpportunity.tenant_id, CRMOpportunity.stage_id)
Index("ix_crm_opportunity_stage_history_opportunity_id", CRMOpportunityStageHistory.opportunity_id)
