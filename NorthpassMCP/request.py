"""
Builder-pattern HTTP client for the Northpass LMS REST API.
Auto-applies the API key, rate limiting and retries. Auto-cleans responses on success.
"""

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from .cleaners import clean_item, clean_response
from .config import NorthpassConfig, get_config
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)


class NorthpassAPIError(Exception):
    """Raised when the Northpass API returns an error or cannot be reached."""

    def __init__(self, operation: str, status: int, messages: list[str]):
        self.operation = operation
        self.status = status
        self.messages = messages
        super().__init__(f"Northpass API error in '{operation}' ({status}): {'; '.join(messages)}")

    @classmethod
    def from_response(cls, operation: str, response: httpx.Response) -> "NorthpassAPIError":
        """Build the error subclass matching the response status."""
        status = response.status_code
        detail = _error_detail(response)
        error_cls, message = _STATUS_ERRORS.get(status, (None, None))
        if error_cls is None:
            if status >= 500:
                error_cls, message = NorthpassUnavailableError, f"Northpass API unavailable ({status})"
            else:
                error_cls, message = NorthpassAPIError, f"Northpass API error ({status})"
        messages = [message] + ([detail] if detail else [])
        return error_cls(operation, status, messages)


class NorthpassAuthError(NorthpassAPIError):
    """Raised when the API key is missing, revoked or wrong."""

    def __init__(self, operation: str, status: int, messages: list[str]):
        super().__init__(operation, status, messages)
        self.help_text = (
            "The Northpass API rejected the configured API key.\n\n"
            "To fix it:\n"
            "  1. Create or copy an API key in Northpass (Settings -> API)\n"
            "  2. Update config.json (apiKey) or set the NORTHPASS_API_KEY env var\n"
            "  3. Call the reload_config tool (or restart the server)\n"
        )


class NorthpassAccessDeniedError(NorthpassAPIError):
    """403: the key may not read this resource."""


class NorthpassNotFoundError(NorthpassAPIError):
    """404: the resource does not exist (deleted course, user without transcript)."""


class NorthpassConflictError(NorthpassAPIError):
    """409: the resource already exists."""


class NorthpassRateLimitError(NorthpassAPIError):
    """429: too many requests."""


class NorthpassUnavailableError(NorthpassAPIError):
    """5xx responses, timeouts and network failures (status 0)."""


_STATUS_ERRORS: dict[int, tuple[type[NorthpassAPIError], str]] = {
    401: (NorthpassAuthError, "Northpass API authentication failed - check API key"),
    403: (NorthpassAccessDeniedError, "Northpass API access forbidden - check permissions"),
    404: (NorthpassNotFoundError, "Northpass API resource not found"),
    409: (NorthpassConflictError, "Northpass API conflict - resource already exists"),
    429: (NorthpassRateLimitError, "Northpass API rate limit exceeded"),
    500: (NorthpassUnavailableError, "Northpass API internal server error - API may be down"),
}


def _error_detail(response: httpx.Response) -> str | None:
    """Pull errors[0].detail (JSON:API) or a top-level error string from a body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or None
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("detail") or errors[0].get("title")
    error = body.get("error")
    return error if isinstance(error, str) else None


class NorthpassRequest:
    """
    Builder for Northpass API requests. The API key, throttling and retry
    policy come from the owning client. Cleaners run automatically on success.

    Usage:
        result = await (
            client.request("getCourse")
            .get(f"/v2/courses/{course_id}")
            .cleaner("course")
            .execute()
        )
    """

    def __init__(self, client: "NorthpassClient", operation_name: str):
        self._client = client
        self.operation_name = operation_name
        self.method = "GET"
        self.path: Optional[str] = None
        self.query_params: dict[str, Any] = {}
        self.body: Any = None
        self.use_properties_profile = False
        self._cleaner_name: Optional[str] = None

    # --- Builder methods ---

    def _route(self, method: str, path: str) -> "NorthpassRequest":
        self.method = method
        self.path = path
        return self

    def get(self, path: str) -> "NorthpassRequest":
        return self._route("GET", path)

    def post(self, path: str) -> "NorthpassRequest":
        return self._route("POST", path)

    def patch(self, path: str) -> "NorthpassRequest":
        return self._route("PATCH", path)

    def delete(self, path: str) -> "NorthpassRequest":
        return self._route("DELETE", path)

    def params(self, params: dict[str, Any]) -> "NorthpassRequest":
        """Set query parameters (filters, page, limit)."""
        self.query_params = params
        return self

    def json_body(self, body: Any) -> "NorthpassRequest":
        """Set JSON body for POST/PATCH/DELETE requests."""
        self.body = body
        return self

    def properties_api(self) -> "NorthpassRequest":
        """Throttle against the slower properties profile."""
        self.use_properties_profile = True
        return self

    def cleaner(self, name: str) -> "NorthpassRequest":
        """Set the response cleaner to auto-apply on success."""
        self._cleaner_name = name
        return self

    # --- Execution ---

    async def execute(self) -> Any:
        """Execute the request. Raises NorthpassAPIError subclasses on failure."""
        if not self.path:
            raise ValueError(f"No path set for operation '{self.operation_name}'")
        data = await self._client.send(self, self.path, self.query_params)
        if self._cleaner_name:
            return clean_response(self._cleaner_name, data)
        return data

    async def pages(self, max_pages: int = 50) -> AsyncIterator[Any]:
        """Yield every item across all pages, cleaned if a cleaner is set."""
        async for item in self._client.paginate(self, max_pages=max_pages):
            yield clean_item(self._cleaner_name, item) if self._cleaner_name else item


class NorthpassClient:
    """
    Shared connection to the Northpass API: one httpx.AsyncClient, one rate limiter.

    Usage:
        async with NorthpassClient(get_config()) as client:
            people = await client.request("listPeople").get("/v2/people").execute()
    """

    def __init__(
        self,
        config: NorthpassConfig | None = None,
        limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or get_config()
        self.limiter = limiter or RateLimiter()
        self._http = httpx.AsyncClient(
            base_url=self.config.api_base_url,
            headers={
                "X-Api-Key": self.config.api_key,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "NorthpassClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def request(self, operation_name: str) -> NorthpassRequest:
        return NorthpassRequest(self, operation_name)

    def _relative(self, url: str) -> str:
        """Rewrite absolute upstream links so they go through the configured base URL."""
        upstream = self.config.base_url.rstrip("/")
        if url.startswith(upstream):
            return url[len(upstream):] or "/"
        return url

    async def send(self, req: NorthpassRequest, url: str, params: dict[str, Any] | None) -> Any:
        """Send one request through the rate limiter; returns decoded JSON ({} when empty)."""

        async def _once() -> Any:
            try:
                resp = await self._http.request(
                    req.method,
                    url,
                    params=params or None,
                    json=req.body,
                )
            except httpx.TimeoutException as e:
                raise NorthpassUnavailableError(
                    req.operation_name, 0, [f"Request timeout ({self.config.timeout}s)"]
                ) from e
            except httpx.TransportError as e:
                raise NorthpassUnavailableError(req.operation_name, 0, [str(e)]) from e

            if resp.is_error:
                # 404s are routine here (users without transcripts, deleted courses)
                level = logging.DEBUG if resp.status_code == 404 else logging.WARNING
                logger.log(level, "API call failed: %s %s - %s", req.method, url, resp.status_code)
                raise NorthpassAPIError.from_response(req.operation_name, resp)

            logger.debug("API call succeeded: %s %s", req.method, url)
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as e:
                raise NorthpassAPIError(
                    req.operation_name, resp.status_code, ["JSON parse error"]
                ) from e

        return await self.limiter.call(_once, properties=req.use_properties_profile)

    async def paginate(self, req: NorthpassRequest, max_pages: int = 50) -> AsyncIterator[dict]:
        """Follow ``links.next`` from the first page until it is absent or a page is empty."""
        if not req.path:
            raise ValueError(f"No path set for operation '{req.operation_name}'")
        page = await self.send(req, req.path, req.query_params)
        page_num = 1
        while True:
            items = page.get("data") or []
            for item in items:
                yield item
            next_url = (page.get("links") or {}).get("next")
            if not items or not next_url:
                return
            if page_num >= max_pages:
                logger.warning(
                    "Stopped paginating '%s' after %d pages", req.operation_name, page_num
                )
                return
            page = await self.send(req, self._relative(next_url), None)
            page_num += 1

    async def test_connection(self) -> bool:
        """Probe the people endpoint; False on any API failure."""
        try:
            await self.request("testConnection").get("/v2/people").params({"limit": 1}).execute()
        except NorthpassAPIError as e:
            logger.error("API connection failed: %s", e)
            return False
        logger.info("API connection successful (%s)", self.config.api_base_url)
        return True
