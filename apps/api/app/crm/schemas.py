from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str | None = None
    vat_number: str | None = None
    default_currency: str | None = Field(default=None, min_length=3, max_length=3)
    default_payment_terms: int | None = Field(default=None, ge=0)


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    email: str | None
    vat_number: str | None
    default_currency: str | None
    default_payment_terms: int | None
    created_by: str
    created_at: datetime
    updated_at: datetime


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str | None = None
    email: str | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    company_id: UUID
    first_name: str
    last_name: str | None
    email: str | None
    created_at: datetime
