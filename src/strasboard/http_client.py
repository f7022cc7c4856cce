"""Upstream HTTP helpers shared by the data sources"""

import logging
from collections.abc import Callable
from typing import Any, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import UpstreamError, UpstreamSemanticError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# Inspects a decoded JSON body; returns an upstream error message or None
ErrorCheck = Callable[[Any], Optional[str]]


def truncate(text: str, max_len: int = 100) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


class UpstreamClient:
    """
    Thin wrapper around httpx.AsyncClient.

    Every failure is raised as an UpstreamError (or UpstreamSemanticError when
    the body carries its own error field) so that sources only deal with the
    error taxonomy, never with raw transport exceptions.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = await self._ensure_client()
        return await client.request(method, url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        follow_redirects: bool = True,
        error_check: Optional[ErrorCheck] = None,
        **kwargs: Any,
    ) -> tuple[httpx.Response, Any]:
        """
        Perform a request and decode its JSON body.

        Args:
            method: HTTP method
            url: Absolute URL
            follow_redirects: When False, a 3xx response is returned as-is
            error_check: Optional inspection of the decoded body
            **kwargs: Passed to httpx (params, headers, json, data)

        Returns:
            Tuple of (response, decoded body or None)

        Raises:
            UpstreamError: On transport failure, status >= 400 or bad JSON
            UpstreamSemanticError: When error_check reports an error
        """
        try:
            response = await self._send(method, url, follow_redirects=follow_redirects, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"request timed out: {url}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"request failed: {e}") from e

        if not follow_redirects and response.is_redirect:
            return response, None

        if response.status_code >= 400:
            raise UpstreamError(
                f"server returned {response.status_code}: {truncate(response.text)}"
            )

        if not response.content:
            return response, None

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError(f"failed to decode response: {e}") from e

        if error_check is not None:
            message = error_check(body)
            if message:
                raise UpstreamSemanticError(message)

        return response, body

    async def get_json(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        error_check: Optional[ErrorCheck] = None,
    ) -> Any:
        """GET a URL and return its decoded JSON body."""
        _, body = await self.request(
            "GET", url, params=params, headers=headers, error_check=error_check
        )
        return body

    async def post_json(
        self,
        url: str,
        payload: Any = None,
        headers: Optional[dict[str, str]] = None,
        error_check: Optional[ErrorCheck] = None,
    ) -> Any:
        """POST a JSON payload and return the decoded JSON body."""
        _, body = await self.request(
            "POST", url, json=payload, headers=headers, error_check=error_check
        )
        return body

    async def post_form(
        self,
        url: str,
        form: dict[str, str],
        headers: Optional[dict[str, str]] = None,
    ) -> tuple[httpx.Response, Any]:
        """POST form data; the response is returned too for its cookies."""
        return await self.request("POST", url, data=form, headers=headers)

    async def get_redirect(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """GET a URL without following redirects."""
        response, _ = await self.request(
            "GET", url, params=params, headers=headers, follow_redirects=False
        )
        return response
