"""
HTTP transport for the marketplace API.
"""

from typing import Any, Callable, Dict, Optional

import httpx

from shared.config import SyncSettings
from shared.errors import ClassifiedError, ErrorClassification, StructuralError, classify_status
from shared.logging import get_logger


class ApiClient:
    """
    Thin async client for the marketplace API.

    Every failure leaves this class as a ClassifiedError, so callers and
    retry policies only ever look at the classification tag.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.token_provider = token_provider
        self.logger = get_logger("adapters.api_client")

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ApiClient":
        token = settings.auth_token
        return cls(
            settings.api_base_url,
            timeout=settings.request_timeout_seconds,
            token_provider=(lambda: token) if token else None,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get the underlying HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send a request and return the decoded response body."""
        client = await self._get_client()
        details = {"method": method.upper(), "path": path}

        try:
            response = await client.request(
                method.upper(),
                path,
                json=body,
                params=params,
                headers=self._headers(),
            )
        except httpx.TimeoutException as exc:
            self.logger.warning("API request timed out", **details)
            raise ClassifiedError(ErrorClassification.TRANSIENT, "Request timed out", details=details) from exc
        except httpx.TransportError as exc:
            self.logger.warning("API request failed to connect", error=str(exc), **details)
            raise ClassifiedError(
                ErrorClassification.TRANSIENT,
                str(exc) or exc.__class__.__name__,
                details=details
            ) from exc

        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise StructuralError("Response body is not valid JSON", details=details) from exc

        classification = classify_status(response.status_code)
        self.logger.warning(
            "API request failed",
            status_code=response.status_code,
            classification=classification.value,
            **details
        )
        raise ClassifiedError(
            classification,
            self._error_message(response),
            status_code=response.status_code,
            details=details
        )

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Optional[Any] = None) -> Any:
        return await self.request("POST", path, body=body)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(payload, dict) and payload.get("message"):
            message = payload["message"]
            # Validation errors come back as a list of messages
            if isinstance(message, list):
                return "; ".join(str(item) for item in message)
            return str(message)
        return f"HTTP {response.status_code}"
