from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import CRMCompany, CRMContact
from app.crm.repositories import CompanyRepository, ContactRepository
from app.crm.schemas import CompanyCreate, CompanyRead, ContactCreate, ContactRead
from app.platform.security.context import AuthContext


@dataclass(slots=True)
class CompanyDirectory:
    """Tenant-scoped company/contact lookups consumed by the sales documents."""

    company_repository: CompanyRepository = CompanyRepository()
    contact_repository: ContactRepository = ContactRepository()

    def create_company(self, session: Session, ctx: AuthContext, payload: CompanyCreate) -> CompanyRead:
        data = payload.model_dump(mode="python")
        data["tenant_id"] = self.company_repository.tenant_id(ctx)
        data["created_by"] = ctx.user_id
        self.company_repository.validate_write_security(data, ctx, action="create")

        company = CRMCompany(**data)
        session.add(company)
        session.commit()
        session.refresh(company)
        return CompanyRead.model_validate(company)

    def create_contact(self, session: Session, ctx: AuthContext, company_id: uuid.UUID, payload: ContactCreate) -> ContactRead:
        company = self.find_company(session, ctx, company_id)
        if company is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="company not found")

        contact = CRMContact(tenant_id=company.tenant_id, company_id=company.id, **payload.model_dump(mode="python"))
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return ContactRead.model_validate(contact)

    def get_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> CompanyRead:
        company = self.find_company(session, ctx, company_id)
        if company is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="company not found")
        return CompanyRead.model_validate(company)

    def list_companies(self, session: Session, ctx: AuthContext) -> list[CompanyRead]:
        stmt = self.company_repository.apply_scope_query(select(CRMCompany), ctx)
        rows = session.scalars(stmt.order_by(CRMCompany.name)).all()
        return [CompanyRead.model_validate(row) for row in rows]

    def find_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> CRMCompany | None:
        stmt = select(CRMCompany).where(CRMCompany.id == company_id)
        return session.scalar(self.company_repository.apply_scope_query(stmt, ctx))

    def find_contact(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        *,
        company_id: uuid.UUID | None = None,
    ) -> CRMContact | None:
        stmt = select(CRMContact).where(CRMContact.id == contact_id)
        if company_id is not None:
            stmt = stmt.where(CRMContact.company_id == company_id)
        return session.scalar(self.contact_repository.apply_scope_query(stmt, ctx))


company_directory = CompanyDirectory()
