from __future__ import annotations

from fastapi import Request

from curbside.config import settings


def get_user_id(request: Request) -> str | None:
    """Authenticated subject, or None for anonymous callers.

    Tokens are validated by the upstream authorizer, which forwards the
    subject claim in a trusted header.
    """
    value = (request.headers.get(settings.user_header) or "").strip()
    return value or None
