import logging
from dataclasses import dataclass

import httpx

from pve_dashboard.config import get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    id: str
    email: str | None
    metadata_admin: bool = False


class IdentityClient:
    """Resolves a bearer token to the user it was issued for."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"apikey": api_key} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=5.0,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def get_user(self, token: str) -> CallerIdentity | None:
        try:
            response = await self.client.get(
                "/auth/v1/user", headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.RequestError as exc:
            logger.warning("identity lookup failed error=%s", exc)
            return None
        if response.status_code != 200:
            return None
        data = response.json()
        user_id = data.get("id")
        if not isinstance(user_id, str) or not user_id:
            return None
        user_meta = data.get("user_metadata") or {}
        app_meta = data.get("app_metadata") or {}
        return CallerIdentity(
            id=user_id,
            email=data.get("email"),
            metadata_admin=bool(user_meta.get("is_admin"))
            or app_meta.get("role") == "admin",
        )


def build_identity_client() -> IdentityClient | None:
    settings = get_settings()
    if not settings.identity_url:
        return None
    return IdentityClient(settings.identity_url, settings.identity_api_key)
