from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, update
from sqlalchemy.orm import Session

from pmo import audit, events
from pmo.core.config import get_settings
from pmo.crm.conversion import (
    CREATED_FROM_LEAD_CONVERSION,
    DEFAULT_PIPELINE_STAGES,
    ConversionContext,
    ConversionPlan,
    LeadSnapshot,
    compute_weighted_amount,
    map_lead_source,
    normalize_conversion_request,
    select_initial_stage,
)
from pmo.crm.errors import (
    AlreadyConvertedError,
    ClientNotFoundError,
    CRMError,
    LeadNotFoundError,
    LeadStateError,
    MissingOwnerError,
    NotFoundError,
    PipelineMisconfiguredError,
)
from pmo.crm.models import (
    CRMAccount,
    CRMClient,
    CRMContact,
    CRMLead,
    CRMOpportunity,
    CRMOpportunityStageHistory,
    CRMPipeline,
    CRMPipelineStage,
    CRMProject,
    LeadStatus,
)
from pmo.crm.repositories import AccountRepository, LeadRepository, PipelineRepository
from pmo.crm.schemas import (
    LeadConversionResult,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    PipelineRead,
)
from pmo.metrics import observe_default_pipeline_bootstrap, observe_lead_conversion


logger = logging.getLogger("pmo.crm.conversion")
tracer = trace.get_tracer("pmo.crm.conversion")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _event_envelope(event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utcnow().isoformat(),
        "actor_user_id": actor_user.user_id,
        "tenant_id": actor_user.tenant_id,
        "correlation_id": actor_user.correlation_id,
        "version": 1,
        "payload": payload,
    }


class LeadService:
    entity_type = "crm.lead"

    def __init__(self) -> None:
        self.repository = LeadRepository()

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        search: str | None = None,
        source: str | None = None,
        status: str | None = None,
        owner_user_id: uuid.UUID | None = None,
    ) -> list[LeadRead]:
        leads = self.repository.list_leads(
            session,
            actor_user.tenant_id,
            search=search,
            source=source,
            status=status,
            owner_user_id=owner_user_id,
        )
        return [LeadRead.model_validate(lead) for lead in leads]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._get_visible_lead(session, actor_user, lead_id))

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        if dto.status == LeadStatus.CONVERTED:
            raise LeadStateError("lead cannot be created as converted")

        lead = CRMLead(
            tenant_id=actor_user.tenant_id,
            email=str(dto.email),
            name=dto.name,
            company=dto.company,
            service_interest=dto.service_interest,
            message=dto.message,
            source=dto.source,
            status=dto.status,
            owner_user_id=dto.owner_user_id,
        )
        try:
            session.add(lead)
            session.flush()
            created = LeadRead.model_validate(lead)
            session.commit()
        except Exception:
            session.rollback()
            raise

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(created.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            tenant_id=actor_user.tenant_id,
        )
        events.publish(
            _event_envelope("crm.lead.created", actor_user, {"lead_id": str(created.id), "status": created.status})
        )
        return created

    def update_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
    ) -> LeadRead:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        if lead.status == LeadStatus.CONVERTED:
            raise LeadStateError("converted lead cannot be updated")

        changes = dto.model_dump(exclude_unset=True)
        if changes.get("status") == LeadStatus.CONVERTED:
            raise LeadStateError("use lead conversion to mark a lead as converted")

        before = LeadRead.model_validate(lead).model_dump(mode="json")
        try:
            for field_name, value in changes.items():
                setattr(lead, field_name, str(value) if field_name == "email" and value is not None else value)
            lead.row_version = lead.row_version + 1
            session.add(lead)
            session.flush()
            updated = LeadRead.model_validate(lead)
            session.commit()
        except Exception:
            session.rollback()
            raise

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(updated.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            tenant_id=actor_user.tenant_id,
        )
        events.publish(
            _event_envelope(
                "crm.lead.updated",
                actor_user,
                {"lead_id": str(updated.id), "changed_fields": sorted(changes)},
            )
        )
        return updated

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        before = LeadRead.model_validate(lead).model_dump(mode="json")
        try:
            session.delete(lead)
            session.commit()
        except Exception:
            session.rollback()
            raise
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
            tenant_id=actor_user.tenant_id,
        )
        events.publish(_event_envelope("crm.lead.deleted", actor_user, {"lead_id": str(lead_id)}))

    def _get_visible_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> CRMLead:
        lead = self.repository.get(session, lead_id, actor_user.tenant_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead


class PipelineService:
    entity_type = "crm.pipeline"

    def __init__(self) -> None:
        self.repository = PipelineRepository()

    def get_default_pipeline(self, session: Session, actor_user: ActorUser) -> PipelineRead:
        if actor_user.tenant_id is None:
            raise NotFoundError("default pipeline not found")
        pipeline = self.repository.get_default(session, actor_user.tenant_id)
        if pipeline is None:
            raise NotFoundError("default pipeline not found")
        return PipelineRead.model_validate(pipeline)

    def ensure_default_pipeline(self, session: Session, tenant_id: str) -> tuple[CRMPipeline, bool]:
        """Return the tenant's default pipeline, creating it with the canonical stages if absent.

        The partial unique index on ``(tenant_id) WHERE is_default`` makes a
        concurrent bootstrap fail at flush time; the losing transaction rolls
        back and a retry picks up the winner's pipeline.
        """
        pipeline = self.repository.get_default(session, tenant_id)
        if pipeline is not None:
            return pipeline, False

        pipeline = CRMPipeline(
            tenant_id=tenant_id,
            name=get_settings().default_pipeline_name,
            description="Default sales pipeline",
            is_default=True,
            is_active=True,
            stages=[
                CRMPipelineStage(
                    name=template.name,
                    position=template.position,
                    probability=template.probability,
                    stage_type=template.stage_type,
                    color=template.color,
                )
                for template in DEFAULT_PIPELINE_STAGES
            ],
        )
        session.add(pipeline)
        session.flush()
        return pipeline, True


class LeadConversionService:
    """Turns a lead into client, contact, project, account and opportunity records.

    The four steps (validate, materialize entities, bootstrap the sales side,
    finalize the lead) run inside the caller's session and are committed
    together. Any failure rolls the session back so nothing written during the
    call survives, and the lead keeps its previous status.
    """

    entity_type = "crm.lead"

    def __init__(self) -> None:
        self.leads = LeadRepository()
        self.accounts = AccountRepository()
        self.pipeline_service = PipelineService()

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> LeadConversionResult:
        started = time.perf_counter()
        plan = normalize_conversion_request(dto)

        with tracer.start_as_current_span(
            "crm.lead.convert",
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            span.set_attribute("crm.lead_id", str(lead_id))
            if actor_user.tenant_id is not None:
                span.set_attribute("crm.tenant_id", actor_user.tenant_id)
            try:
                ctx = self._validate(session, lead_id, actor_user.tenant_id, plan)
                ctx = self._materialize_entities(session, ctx)
                ctx = self._bootstrap_sales_side(session, ctx)
                ctx = self._finalize(session, ctx)
                session.commit()
            except CRMError as exc:
                session.rollback()
                observe_lead_conversion(exc.code, time.perf_counter() - started)
                span.set_status(Status(StatusCode.ERROR, exc.code))
                logger.warning(
                    "lead.conversion_rejected",
                    extra={"lead_id": str(lead_id), "outcome": exc.code, "error": exc.message},
                )
                raise
            except Exception as exc:
                session.rollback()
                observe_lead_conversion("error", time.perf_counter() - started)
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                logger.exception(
                    "lead.conversion_failed",
                    extra={"lead_id": str(lead_id), "outcome": "error", "error": str(exc)},
                )
                raise

            for key, value in ctx.produced_ids().items():
                if value is not None:
                    span.set_attribute(f"crm.{key}", value)

        observe_lead_conversion("converted", time.perf_counter() - started)
        if ctx.pipeline_created:
            observe_default_pipeline_bootstrap()
        self._publish_converted(actor_user, ctx)
        logger.info(
            "lead.converted",
            extra={
                "lead_id": str(ctx.lead.id),
                "outcome": "converted",
                "pipeline_id": str(ctx.pipeline_id) if ctx.pipeline_id else None,
                **ctx.produced_ids(),
            },
        )

        lead = self.leads.get(session, ctx.lead.id, None)
        if lead is None:
            raise LeadNotFoundError(ctx.lead.id)
        return LeadConversionResult(
            lead=LeadRead.model_validate(lead),
            client_id=ctx.client_id,
            contact_id=ctx.contact_id,
            project_id=ctx.project_id,
            account_id=ctx.account_id,
            opportunity_id=ctx.opportunity_id,
        )

    def _validate(
        self,
        session: Session,
        lead_id: uuid.UUID,
        tenant_id: str | None,
        plan: ConversionPlan,
    ) -> ConversionContext:
        lead = self.leads.get_for_conversion(session, lead_id, tenant_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        if lead.status == LeadStatus.CONVERTED:
            raise AlreadyConvertedError(lead_id)
        return ConversionContext(lead=LeadSnapshot.from_model(lead), plan=plan, tenant_id=tenant_id)

    def _materialize_entities(self, session: Session, ctx: ConversionContext) -> ConversionContext:
        lead, plan = ctx.lead, ctx.plan

        client_id = plan.client_id or lead.client_id
        client_created = False
        if plan.client_id is not None:
            override = session.get(CRMClient, plan.client_id)
            if override is None or (ctx.tenant_id is not None and override.tenant_id not in (None, ctx.tenant_id)):
                raise ClientNotFoundError(plan.client_id)
        if client_id is None and plan.create_client and lead.company:
            client = CRMClient(
                tenant_id=ctx.tenant_id,
                name=lead.company,
                notes=f"Created from lead: {lead.email}",
            )
            session.add(client)
            session.flush()
            client_id = client.id
            client_created = True

        contact_id = lead.primary_contact_id
        contact_created = False
        if contact_id is None and plan.create_contact and client_id is not None:
            contact = CRMContact(
                client_id=client_id,
                name=lead.name or lead.email,
                email=lead.email,
                role=plan.contact_role,
                notes="Created from lead",
            )
            session.add(contact)
            session.flush()
            contact_id = contact.id
            contact_created = True

        project_id = None
        if plan.create_project and client_id is not None:
            owner_id = ctx.resolve_owner_id()
            if owner_id is None:
                raise MissingOwnerError("project")
            project = CRMProject(
                tenant_id=ctx.tenant_id,
                client_id=client_id,
                owner_user_id=owner_id,
                name=plan.project_name or lead.default_deal_name(),
                status="PLANNING",
            )
            session.add(project)
            session.flush()
            project_id = project.id

        return replace(
            ctx,
            client_id=client_id,
            contact_id=contact_id,
            project_id=project_id,
            client_created=client_created,
            contact_created=contact_created,
        )

    def _bootstrap_sales_side(self, session: Session, ctx: ConversionContext) -> ConversionContext:
        if not ctx.plan.create_opportunity or ctx.tenant_id is None:
            return ctx

        owner_id = ctx.resolve_owner_id()
        if owner_id is None:
            raise MissingOwnerError("opportunity")

        account, account_created = self._resolve_account(session, ctx, ctx.tenant_id, owner_id)
        pipeline, pipeline_created = self.pipeline_service.ensure_default_pipeline(session, ctx.tenant_id)
        stage = select_initial_stage(pipeline.stages)
        if stage is None:
            raise PipelineMisconfiguredError(pipeline.id)

        opportunity = self._create_opportunity(session, ctx, ctx.tenant_id, owner_id, account, pipeline, stage)
        return replace(
            ctx,
            account_id=account.id,
            pipeline_id=pipeline.id,
            opportunity_id=opportunity.id,
            account_created=account_created,
            pipeline_created=pipeline_created,
        )

    def _resolve_account(
        self,
        session: Session,
        ctx: ConversionContext,
        tenant_id: str,
        owner_id: uuid.UUID,
    ) -> tuple[CRMAccount, bool]:
        lead = ctx.lead
        if ctx.client_id is not None:
            account = self.accounts.find_by_client(session, tenant_id, ctx.client_id)
            if account is None:
                account = self.accounts.find_by_name(session, tenant_id, lead.display_name)
            if account is not None:
                return account, False

        client = session.get(CRMClient, ctx.client_id) if ctx.client_id is not None else None
        custom_fields: dict[str, str] = {"created_from": CREATED_FROM_LEAD_CONVERSION, "lead_id": str(lead.id)}
        if ctx.client_id is not None:
            custom_fields["legacy_client_id"] = str(ctx.client_id)

        account = CRMAccount(
            tenant_id=tenant_id,
            name=client.name if client is not None else lead.display_name,
            industry=client.industry if client is not None else None,
            account_type="PROSPECT",
            owner_user_id=owner_id,
            client_id=ctx.client_id,
            custom_fields=custom_fields,
        )
        session.add(account)
        session.flush()
        return account, True

    def _create_opportunity(
        self,
        session: Session,
        ctx: ConversionContext,
        tenant_id: str,
        owner_id: uuid.UUID,
        account: CRMAccount,
        pipeline: CRMPipeline,
        stage: CRMPipelineStage,
    ) -> CRMOpportunity:
        plan = ctx.plan
        amount = plan.opportunity_amount
        probability = plan.opportunity_probability if plan.opportunity_probability is not None else stage.probability

        opportunity = CRMOpportunity(
            tenant_id=tenant_id,
            name=plan.opportunity_name or ctx.lead.default_deal_name(),
            description="Created from lead conversion",
            account_id=account.id,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            amount=amount,
            probability=probability,
            weighted_amount=compute_weighted_amount(amount, probability),
            currency=get_settings().default_currency,
            status="OPEN",
            expected_close_date=plan.expected_close_date,
            lead_source=map_lead_source(ctx.lead.source),
            owner_user_id=owner_id,
            custom_fields={"legacy_lead_id": str(ctx.lead.id), "created_from": CREATED_FROM_LEAD_CONVERSION},
        )
        session.add(opportunity)
        session.flush()

        session.add(
            CRMOpportunityStageHistory(
                opportunity_id=opportunity.id,
                to_stage_id=stage.id,
                changed_by_user_id=owner_id,
                changed_at=utcnow(),
            )
        )
        session.flush()
        return opportunity

    def _finalize(self, session: Session, ctx: ConversionContext) -> ConversionContext:
        now = utcnow()
        result = session.execute(
            update(CRMLead)
            .where(
                and_(
                    CRMLead.id == ctx.lead.id,
                    CRMLead.status != LeadStatus.CONVERTED,
                    CRMLead.row_version == ctx.lead.row_version,
                )
            )
            .values(
                status=LeadStatus.CONVERTED,
                client_id=ctx.client_id,
                primary_contact_id=ctx.contact_id,
                converted_at=now,
                updated_at=now,
                row_version=CRMLead.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Another caller converted (or touched) the lead after it was read.
            raise AlreadyConvertedError(ctx.lead.id)
        return ctx

    def _publish_converted(self, actor_user: ActorUser, ctx: ConversionContext) -> None:
        produced = ctx.produced_ids()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(ctx.lead.id),
            action="convert",
            before={"status": ctx.lead.status},
            after={"status": LeadStatus.CONVERTED, **produced},
            correlation_id=actor_user.correlation_id,
            tenant_id=ctx.tenant_id,
        )
        events.publish(_event_envelope("crm.lead.converted", actor_user, {"lead_id": str(ctx.lead.id), **produced}))
        if ctx.opportunity_id is not None:
            events.publish(
                _event_envelope(
                    "crm.opportunity.created",
                    actor_user,
                    {
                        "opportunity_id": produced["opportunity_id"],
                        "account_id": produced["account_id"],
                        "pipeline_id": str(ctx.pipeline_id),
                        "lead_id": str(ctx.lead.id),
                    },
                )
            )
