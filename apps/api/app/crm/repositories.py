from __future__ import annotations

from app.platform.security.repository import BaseRepository


class CompanyRepository(BaseRepository):
    resource = "crm.company"


class ContactRepository(BaseRepository):
    resource = "crm.contact"
