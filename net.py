"""Async JSON requests against the remote providers used by the engine."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

import requests

LOGGER = logging.getLogger(__name__)

USER_AGENT = "PrayerEngine/1.0"
DEFAULT_TIMEOUT = 15.0


class ProviderErrorKind(Enum):
    TIMEOUT = "timeout"
    BAD_RESPONSE = "bad_response"
    UNREACHABLE = "unreachable"


class ProviderError(Exception):
    """Raised when a remote provider cannot deliver a usable payload."""

    def __init__(self, kind: ProviderErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


async def fetch_json(
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """GET *url* on a worker thread and return the decoded JSON body.

    The request is bounded twice: by the transport timeout and by
    ``asyncio.wait_for`` so a stalled read is abandoned even when the socket
    never times out. Cancelling the awaiting task abandons the request.
    """
    request_headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if headers:
        request_headers.update(headers)

    def _request() -> Any:
        LOGGER.debug("GET %s params=%s", url, params)
        response = requests.get(url, params=params, headers=request_headers, timeout=timeout)
        LOGGER.debug("Response status for %s: %s", url, response.status_code)
        response.raise_for_status()
        return response.json()

    try:
        return await asyncio.wait_for(asyncio.to_thread(_request), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProviderError(ProviderErrorKind.TIMEOUT, f"Request to {url} timed out after {timeout}s") from exc
    except requests.exceptions.Timeout as exc:
        raise ProviderError(ProviderErrorKind.TIMEOUT, f"Request to {url} timed out") from exc
    except requests.exceptions.HTTPError as exc:
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"{url} returned {exc.response.status_code}") from exc
    except ValueError as exc:
        raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"{url} returned invalid JSON") from exc
    except requests.exceptions.RequestException as exc:
        raise ProviderError(ProviderErrorKind.UNREACHABLE, f"{url} is unreachable: {exc}") from exc
