from __future__ import annotations

import logging

import httpx

from .config import DEFAULT_UPSTREAM_COLLECTION_URL

LOGGER = logging.getLogger("Devstack.Relay")

UPSTREAM_TIMEOUT = 10.0
UPSTREAM_MAX_REDIRECTS = 5

# Blu-ray.com rejects requests that do not look like a browser.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,"
        "image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "DNT": "1",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}


class UpstreamFetchError(Exception):
    """Raised when the upstream collection page cannot be fetched."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


async def fetch_collection(
    user_id: str,
    action: str | None = None,
    *,
    base_url: str = DEFAULT_UPSTREAM_COLLECTION_URL,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = UPSTREAM_TIMEOUT,
) -> httpx.Response:
    """Fetch a user's collection page, raising :class:`UpstreamFetchError` on failure."""

    params = {"u": user_id}
    if action:
        params["action"] = action

    try:
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=UPSTREAM_MAX_REDIRECTS,
            headers=BROWSER_HEADERS,
            transport=transport,
        ) as client:
            request = client.build_request("GET", base_url, params=params)
            LOGGER.info("Proxying request to: %s", request.url)
            response = await client.send(request)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise UpstreamFetchError(
            str(exc), status_code=exc.response.status_code
        ) from exc
    except httpx.HTTPError as exc:
        raise UpstreamFetchError(f"Request failed: {exc}") from exc

    return response
