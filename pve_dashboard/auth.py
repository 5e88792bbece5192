from collections.abc import AsyncIterator

from fastapi import Depends, Header

from pve_dashboard.clients.identity import (
    CallerIdentity,
    IdentityClient,
    build_identity_client,
)
from pve_dashboard.config import get_settings
from pve_dashboard.errors import ForbiddenError, UnauthenticatedError


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


async def get_identity_client() -> AsyncIterator[IdentityClient | None]:
    client = build_identity_client()
    try:
        yield client
    finally:
        if client is not None:
            await client.aclose()


async def optional_caller(
    authorization: str | None = Header(default=None),
    identity_client: IdentityClient | None = Depends(get_identity_client),
) -> CallerIdentity | None:
    """Identify the caller when a bearer token is sent.

    A token that the identity provider rejects is an error; no token at all
    (or no identity provider configured) is an anonymous request.
    """
    token = bearer_token(authorization)
    if token is None or identity_client is None:
        return None
    identity = await identity_client.get_user(token)
    if identity is None:
        raise UnauthenticatedError("Not authenticated")
    return identity


async def require_caller(
    caller: CallerIdentity | None = Depends(optional_caller),
) -> CallerIdentity:
    if caller is None:
        raise UnauthenticatedError("Not authenticated")
    return caller


def is_admin(caller: CallerIdentity) -> bool:
    """Admin gate.

    An empty ``ADMIN_EMAILS`` or ``*`` admits every authenticated user;
    otherwise the caller's email must be listed, unless the identity
    provider already flags the user as admin.
    """
    if caller.metadata_admin:
        return True
    settings = get_settings()
    if settings.admin_emails.strip() == "*":
        return True
    admins = settings.admin_email_list()
    if not admins:
        return True
    return bool(caller.email) and caller.email.lower() in admins


async def require_admin(
    caller: CallerIdentity = Depends(require_caller),
) -> CallerIdentity:
    if not is_admin(caller):
        raise ForbiddenError("Admin access required")
    return caller
