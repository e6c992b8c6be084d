"""Client for the serverless functions that start story generation."""

import logging
from typing import Any, Dict, Optional

import httpx

from bedtime.config import settings

logger = logging.getLogger(__name__)


class GenerationStartError(Exception):
    """The start operation failed; message is shown to the user."""


class GenerationStartTimeout(GenerationStartError):
    """The client gave up waiting; the function keeps running server-side."""


class FunctionsClient:
    """Invokes create-story / create-series functions over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the functions client."""
        self.base_url = (base_url or settings.FUNCTIONS_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.FUNCTIONS_API_KEY
        self.timeout = timeout if timeout is not None else settings.FUNCTIONS_TIMEOUT
        self.transport = transport

    def _build_headers(self) -> Dict[str, str]:
        """Build HTTP headers for function calls."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def invoke(self, name: str, body: Dict[str, Any]) -> Any:
        """
        Invoke a function by name.

        Args:
            name: Function name, e.g. 'create-story'
            body: JSON body

        Returns:
            Decoded JSON response, or None for an empty body

        Raises:
            GenerationStartTimeout: If the request timed out
            GenerationStartError: On any other transport or HTTP error
        """
        logger.info(f"Invoking function {name}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/{name}",
                    headers=self._build_headers(),
                    json=body,
                )
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise GenerationStartTimeout(f"Function {name} timed out") from e
        except httpx.HTTPStatusError as e:
            raise GenerationStartError(_error_message(e.response)) from e
        except httpx.HTTPError as e:
            raise GenerationStartError(f"Function {name} failed: {e}") from e

        if not response.content:
            return None
        return response.json()

    async def start_story(self, request_id: str):
        """Kick off generation for a queued story request."""
        await self.invoke("create-story", {"request_id": request_id})

    async def create_series(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a series server-side; the function queues the first episode."""
        result = await self.invoke("create-series", payload)
        if not isinstance(result, dict) or "series" not in result:
            raise GenerationStartError("create-series returned no series")
        return result


def _error_message(response: httpx.Response) -> str:
    """Best-effort error text from a function's error response."""
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        for key in ("error", "message"):
            if data.get(key):
                return str(data[key])

    return f"Function returned HTTP {response.status_code}"
