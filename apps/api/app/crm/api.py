from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crm.schemas import CompanyCreate, CompanyRead, ContactCreate, ContactRead
from app.crm.service import company_directory
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context


router = APIRouter(prefix="/api/crm", tags=["crm"])


@router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    payload: CompanyCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead:
    return company_directory.create_company(db, ctx, payload)


@router.get("/companies", response_model=list[CompanyRead])
def list_companies(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[CompanyRead]:
    return company_directory.list_companies(db, ctx)


@router.get("/companies/{company_id}", response_model=CompanyRead)
def get_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead:
    return company_directory.get_company(db, ctx, company_id)


@router.post("/companies/{company_id}/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    company_id: uuid.UUID,
    payload: ContactCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ContactRead:
    return company_directory.create_contact(db, ctx, company_id, payload)
