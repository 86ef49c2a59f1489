"""Request dependencies.

Authentication happens at the front door (out of scope here): it verifies
the caller and forwards the principal id in the X-Principal-Id header.
"""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request

from wharchive.domain.models import Principal
from wharchive.engine import Engine

PRINCIPAL_HEADER = "X-Principal-Id"


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_current_principal(
    x_principal_id: str | None = Header(None, alias=PRINCIPAL_HEADER),
    engine: Engine = Depends(get_engine),
) -> Principal:
    """Resolve the principal named by the front door.

    Raises:
        HTTPException 401: If the header is missing or names no active principal.
    """
    if not x_principal_id:
        raise HTTPException(status_code=401, detail="Missing principal")
    principal = engine.store.get_principal(x_principal_id)
    if principal is None or not principal.is_active:
        raise HTTPException(status_code=401, detail="Unknown or inactive principal")
    return principal
