"""
Async JSON-over-HTTP helper shared by every data provider.

All provider traffic goes through `fetch_json`, which is where transport failures are tagged:
HTTP 429 becomes `RateLimitError`, any other non-2xx status or an unparsable body becomes
`ProviderError`, connection failures become `NetworkConnectionError` and socket timeouts become
`RequestTimeoutError`. Callers can then branch on the error kind (fallback versus retry) without
inspecting messages.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from core.errors import NetworkConnectionError, ProviderError, RateLimitError, RequestTimeoutError
from monitoring.metrics import PROVIDER_REQUEST_TIME

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "crypto-assistant/1.0",
}


async def fetch_json(
    session: aiohttp.ClientSession,
    url: str,
    *,
    provider: str,
    endpoint: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """
    GET `url` and return the decoded JSON body.

    Args:
        session (aiohttp.ClientSession): Session owned by the caller.
        url (str): Absolute URL.
        provider (str): Provider name for errors and metrics.
        endpoint (str): Short endpoint label for metrics (e.g. "search").
        params (dict, optional): Query string parameters.
        headers (dict, optional): Extra headers such as API keys.

    Returns:
        Any: Parsed JSON payload.

    Raises:
        RateLimitError: HTTP 429.
        ProviderError: Other non-2xx statuses or invalid JSON.
        NetworkConnectionError: The connection could not be established or was dropped.
        RequestTimeoutError: The request exceeded the session timeout.
    """
    request_headers = dict(DEFAULT_HEADERS)
    if headers:
        request_headers.update(headers)

    try:
        with PROVIDER_REQUEST_TIME.labels(provider=provider, endpoint=endpoint).time():
            async with session.get(url, params=params, headers=request_headers) as resp:
                if resp.status == 429:
                    raise RateLimitError(f"{provider} rate limit exceeded ({endpoint})", source=provider)
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    raise ProviderError(
                        f"{provider} returned HTTP {resp.status} for {endpoint}: {body[:200]}",
                        provider=provider,
                        status=resp.status,
                    )
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise ProviderError(f"{provider} returned invalid JSON for {endpoint}", provider=provider) from e
    except asyncio.TimeoutError as e:
        raise RequestTimeoutError(f"{provider} {endpoint} request timed out") from e
    except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
        raise NetworkConnectionError(f"{provider} {endpoint} connection failed: {e}") from e
    except aiohttp.ClientError as e:
        raise ProviderError(f"{provider} {endpoint} request failed: {e}", provider=provider) from e
