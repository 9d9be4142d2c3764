import asyncio
from typing import Any, Dict, Optional

import httpx
import structlog

from .errors import ApiError, ProviderUnavailable

logger = structlog.get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"


class HttpClient:
    """Thin wrapper around httpx for talking to the StepDoc API.

    A single AsyncClient is kept for the wrapper's lifetime so the CSRF
    cookie issued by ``api/csrf-token`` travels with later requests.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._csrf_token: Optional[str] = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _auth_header(token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    @staticmethod
    def error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("error") or payload)
        return str(payload)

    async def csrf_token(self) -> str:
        """Return the cached anti-forgery token, fetching one when needed."""
        if self._csrf_token is None:
            response = await self._client.get(self._url("api/csrf-token"))
            if not response.is_success:
                raise ApiError(response.status_code, self.error_message(response))
            try:
                token = response.json().get("csrfToken")
            except (ValueError, AttributeError):
                token = None
            if not token:
                raise ApiError(response.status_code, "CSRF token missing in response.")
            self._csrf_token = token
        return self._csrf_token

    async def send(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        csrf: bool = False,
    ) -> httpx.Response:
        """Make a request and return the raw response without checking its status."""
        merged = {"Content-Type": "application/json"}
        merged.update(self._auth_header(access_token))
        if csrf:
            merged[CSRF_HEADER] = await self.csrf_token()
        if headers:
            merged.update(headers)

        response = await self._client.request(
            method,
            self._url(path),
            params=params,
            json=json_body,
            headers=merged,
        )
        if csrf and response.status_code == 403:
            # Server-side token expired or cookie lost; refetch on next call.
            self._csrf_token = None
        logger.debug("stepdoc_request", method=method, path=path, status=response.status_code)
        return response

    async def request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        csrf: bool = False,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the StepDoc API and decode the JSON body.

        Raises ApiError for any non-2xx status.
        """
        response = await self.send(
            method,
            path,
            access_token=access_token,
            params=params,
            json_body=json_body,
            csrf=csrf,
        )
        if not response.is_success:
            raise ApiError(response.status_code, self.error_message(response))
        return response.json()

    async def wait_until_ready(self, timeout: float = 5.0, poll_interval: float = 0.1) -> None:
        """Poll ``api/health`` until it answers 2xx or ``timeout`` seconds pass.

        Each poll is bounded by the time left before the deadline.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempts = 0
        last_error: Optional[str] = None
        while True:
            attempts += 1
            remaining = max(deadline - loop.time(), 0.001)
            try:
                response = await asyncio.wait_for(self._client.get(self._url("api/health")), timeout=remaining)
                if response.is_success:
                    logger.info("stepdoc_api_ready", attempts=attempts)
                    return
                last_error = f"status {response.status_code}"
            except asyncio.TimeoutError:
                last_error = "health check timed out"
            except httpx.HTTPError as exc:
                last_error = str(exc) or exc.__class__.__name__
            if loop.time() + poll_interval > deadline:
                break
            await asyncio.sleep(poll_interval)
        raise ProviderUnavailable(
            f"StepDoc API not available after {timeout:g} seconds ({attempts} attempts, last error: {last_error})"
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
