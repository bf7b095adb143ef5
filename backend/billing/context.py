"""Request-scoped context passed explicitly into billing services."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

SOURCE_WEB = "web"
SOURCE_API = "api"
SOURCE_WEBHOOK = "webhook"
SOURCE_ADMIN = "admin"
SOURCE_CRON = "cron"


def actor_identity(user) -> str:
    if getattr(user, "email", None):
        return f"user:{user.email}"
    return f"user:{getattr(user, 'id', 'unknown')}"


@dataclass(frozen=True)
class RequestContext:
    """Who is acting, from where, and under which correlation id."""

    actor: str = "system"
    source: str = SOURCE_API
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user: Any = field(default=None, compare=False, repr=False)

    @property
    def user_id(self) -> Optional[int]:
        return getattr(self.user, "pk", None)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user is not None and getattr(self.user, "is_authenticated", False))

    @classmethod
    def from_request(cls, request, *, source: str = SOURCE_API) -> "RequestContext":
        user = getattr(request, "user", None)
        request_id = getattr(request, "billing_request_id", "") or request.headers.get("X-Request-ID", "")
        return cls(
            actor=actor_identity(user) if user is not None and user.is_authenticated else "anonymous",
            source=source,
            request_id=request_id or uuid.uuid4().hex,
            user=user if user is not None and user.is_authenticated else None,
        )

    @classmethod
    def system(cls, *, source: str, actor: str, request_id: str = "") -> "RequestContext":
        return cls(actor=actor, source=source, request_id=request_id or uuid.uuid4().hex)

    @classmethod
    def for_user(cls, user, *, source: str = SOURCE_API) -> "RequestContext":
        return cls(actor=actor_identity(user), source=source, user=user)
