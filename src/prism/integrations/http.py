"""httpx helpers mapping transport and status failures to the error taxonomy."""

from __future__ import annotations

from typing import Any

import httpx

from prism.errors import InvalidCredentialError, NotFoundError, PrismError, ServiceUnavailableError


def build_http_client(timeout: float) -> httpx.AsyncClient:
    """Shared client for all adapters in a worker process."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        headers={"User-Agent": "prism-sync/0.1"},
        follow_redirects=True,
    )


def raise_for_status(response: httpx.Response, host: str) -> None:
    status = response.status_code
    if status == 403 and response.headers.get("x-ratelimit-remaining") == "0":
        raise ServiceUnavailableError(f"{host} rate limit exhausted")
    if status in (401, 403):
        raise InvalidCredentialError(f"{host} rejected the credential ({status})")
    if status == 404:
        raise NotFoundError(f"{host} returned 404")
    if status == 429 or status >= 500:
        raise ServiceUnavailableError(f"{host} returned {status}")
    if status >= 400:
        raise PrismError(f"{host} returned {status}")


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json: Any = None,
    accept_status: tuple[int, ...] = (),
) -> Any:
    """Perform a request and decode the JSON body.

    Statuses in ``accept_status`` skip the status mapping and return the body,
    for APIs that report failures in the payload. Error messages carry the host
    only, never query strings or headers.
    """
    host = httpx.URL(url).host
    try:
        response = await client.request(method, url, headers=headers, params=params, json=json)
    except httpx.TimeoutException as exc:
        raise ServiceUnavailableError(f"Timed out calling {host}") from exc
    except httpx.HTTPError as exc:
        raise ServiceUnavailableError(f"Transport error calling {host}: {type(exc).__name__}") from exc

    if response.status_code not in accept_status:
        raise_for_status(response, host)

    try:
        return response.json()
    except ValueError as exc:
        raise ServiceUnavailableError(f"{host} returned invalid JSON") from exc
