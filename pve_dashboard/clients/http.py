from typing import Any

import httpx

from pve_dashboard.errors import (
    HttpError,
    HypervisorError,
    HypervisorUnreachable,
    TimeoutExceeded,
)


def secure_base_url(raw_url: str) -> str:
    """Normalize a configured hypervisor URL.

    Trailing slashes are dropped and ``http:`` is upgraded to ``https:`` so a
    scheme-changing redirect never strips the auth headers.
    """
    base = raw_url.strip().rstrip("/")
    if base.lower().startswith("http:"):
        base = "https:" + base[len("http:") :]
    return base


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a single request and map failures onto the error taxonomy.

    There is no retry here: hypervisor calls either succeed within ``timeout``
    or surface as ``HttpError``, ``TimeoutExceeded`` or
    ``HypervisorUnreachable``.
    """
    try:
        response = await client.request(method, path, timeout=timeout, **kwargs)
    except httpx.TimeoutException as exc:
        raise TimeoutExceeded(
            f"{method} {path} timed out after {timeout:g}s"
        ) from exc
    except httpx.RequestError as exc:
        raise HypervisorUnreachable(
            f"{method} {path} failed ({exc.__class__.__name__}: {exc})"
        ) from exc

    if response.is_success:
        return response
    raise HttpError(
        method=method,
        path=path,
        status_code=response.status_code,
        body=response.text or "",
    )


def unwrap_data(response: httpx.Response) -> Any:
    try:
        payload = response.json()
    except ValueError as exc:
        raise HypervisorError(
            f"non-JSON response from {response.request.url.path} ({response.status_code})"
        ) from exc
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload
