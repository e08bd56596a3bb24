from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, and_, or_, select
from sqlalchemy.orm import Session, selectinload

from pmo.crm.models import CRMAccount, CRMLead, CRMPipeline


class TenantScopedRepository:
    """Restricts queries to the caller's tenant.

    A tenant-less caller is a system context and sees every row.
    """

    model: Any = None

    def apply_scope_query(self, query: Select[Any], tenant_id: str | None) -> Select[Any]:
        if tenant_id is None:
            return query
        return query.where(self.model.tenant_id == tenant_id)


class LeadRepository(TenantScopedRepository):
    model = CRMLead

    def get(self, session: Session, lead_id: uuid.UUID, tenant_id: str | None) -> CRMLead | None:
        query = self.apply_scope_query(select(CRMLead).where(CRMLead.id == lead_id), tenant_id)
        return session.scalar(query)

    def get_for_conversion(self, session: Session, lead_id: uuid.UUID, tenant_id: str | None) -> CRMLead | None:
        query = (
            select(CRMLead)
            .where(CRMLead.id == lead_id)
            .options(selectinload(CRMLead.client), selectinload(CRMLead.primary_contact))
            .with_for_update(of=CRMLead)
        )
        return session.scalar(self.apply_scope_query(query, tenant_id))

    def list_leads(
        self,
        session: Session,
        tenant_id: str | None,
        *,
        search: str | None = None,
        source: str | None = None,
        status: str | None = None,
        owner_user_id: uuid.UUID | None = None,
    ) -> list[CRMLead]:
        query = self.apply_scope_query(select(CRMLead), tenant_id)
        if source is not None:
            query = query.where(CRMLead.source == source)
        if status is not None:
            query = query.where(CRMLead.status == status)
        if owner_user_id is not None:
            query = query.where(CRMLead.owner_user_id == owner_user_id)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.where(
                or_(
                    CRMLead.name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                    CRMLead.company.ilike(pattern),
                    CRMLead.message.ilike(pattern),
                )
            )
        query = query.order_by(CRMLead.created_at.desc(), CRMLead.id)
        return list(session.scalars(query).all())


class AccountRepository(TenantScopedRepository):
    model = CRMAccount

    def find_by_client(self, session: Session, tenant_id: str, client_id: uuid.UUID) -> CRMAccount | None:
        return session.scalar(
            select(CRMAccount)
            .where(and_(CRMAccount.tenant_id == tenant_id, CRMAccount.client_id == client_id))
            .order_by(CRMAccount.created_at, CRMAccount.id)
            .limit(1)
        )

    def find_by_name(self, session: Session, tenant_id: str, name: str) -> CRMAccount | None:
        return session.scalar(
            select(CRMAccount)
            .where(and_(CRMAccount.tenant_id == tenant_id, CRMAccount.name == name))
            .order_by(CRMAccount.created_at, CRMAccount.id)
            .limit(1)
        )


class PipelineRepository(TenantScopedRepository):
    model = CRMPipeline

    def get_default(self, session: Session, tenant_id: str) -> CRMPipeline | None:
        return session.scalar(
            select(CRMPipeline)
            .where(and_(CRMPipeline.tenant_id == tenant_id, CRMPipeline.is_default.is_(True)))
            .options(selectinload(CRMPipeline.stages))
        )
