from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Caller identity threaded through every service call.

    ``tenant_id`` is the partition key for every read and write; services
    refuse to run without it.
    """

    user_id: str
    tenant_id: str | None = None
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)
