"""Shopify Admin GraphQL client."""

import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shopify_sync.core.exceptions import (
    AuthenticationError,
    GraphQLError,
    RateLimitError,
    ShopifyAPIError,
    ShopifyServerError,
)
from shopify_sync.utils.rate_limiter import ThrottleBucket

logger = logging.getLogger(__name__)

CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"

SHOP_QUERY = """
query {
  shop {
    id
    name
  }
}
"""


def normalize_store_domain(store_domain: str) -> str:
    domain = store_domain.strip()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    return domain.rstrip("/")


class ShopifyClient:
    """Rate limited GraphQL client for one store.

    Every call waits on the client side throttle bucket first. Rate limits,
    5xx responses and transport failures are retried with exponential
    backoff; authentication failures are raised immediately.
    """

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        api_version: str = "2024-01",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        throttle: Optional[ThrottleBucket] = None,
    ):
        self.store_domain = normalize_store_domain(store_domain)
        self.access_token = access_token
        self.api_version = api_version
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.throttle = throttle or ThrottleBucket()

    @property
    def endpoint(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.http_client.aclose()

    async def query(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query and return its ``data`` payload."""
        attempts = max_retries or self.max_retries
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type((RateLimitError, ShopifyServerError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._execute(query, variables)
        raise ShopifyAPIError("GraphQL request was not attempted")

    async def _execute(self, query: str, variables: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        await self.throttle.wait_if_needed()

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = await self.http_client.post(
                self.endpoint,
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "X-Shopify-Access-Token": self.access_token,
                },
            )
        except httpx.TransportError as e:
            raise ShopifyServerError(f"Shopify request failed: {e}") from e

        self.throttle.update_from_header(response.headers.get(CALL_LIMIT_HEADER))

        status_code = response.status_code
        if status_code == 429:
            raise RateLimitError("Shopify rate limit exceeded", status_code=429)
        if status_code in (401, 403):
            raise AuthenticationError(
                f"Shopify authentication failed ({status_code}): {response.text[:200]}",
                status_code=status_code,
            )
        if status_code >= 500:
            raise ShopifyServerError(
                f"Shopify server error {status_code}: {response.text[:200]}",
                status_code=status_code,
            )
        if status_code >= 400:
            raise ShopifyAPIError(
                f"Shopify API error {status_code}: {response.text[:200]}",
                status_code=status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ShopifyAPIError(f"Invalid JSON from Shopify: {e}") from e

        cost = (body.get("extensions") or {}).get("cost") or {}
        self.throttle.update_from_cost(cost.get("throttleStatus"))

        errors = body.get("errors")
        if errors:
            if isinstance(errors, list):
                errors = [e if isinstance(e, dict) else {"message": str(e)} for e in errors]
                if any((e.get("extensions") or {}).get("code") == "THROTTLED" for e in errors):
                    raise RateLimitError("Shopify GraphQL query throttled")
                message = "; ".join(str(e.get("message", e)) for e in errors)
            else:
                message = str(errors)
            raise GraphQLError(f"GraphQL errors: {message}")

        data = body.get("data")
        if data is None:
            raise ShopifyAPIError("No data in response")
        return data

    async def stream_lines(self, url: str) -> AsyncIterator[str]:
        """Stream a signed download URL line by line."""
        try:
            async with self.http_client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise ShopifyAPIError(
                        f"Failed to download results: {response.status_code}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.TransportError as e:
            raise ShopifyServerError(f"Result download failed: {e}") from e

    async def test_connection(self) -> Dict[str, Any]:
        """Check credentials by reading the shop name."""
        try:
            data = await self.query(SHOP_QUERY, max_retries=1)
            shop = data.get("shop") or {}
            return {
                "success": True,
                "message": f"Connected to {shop.get('name', self.store_domain)}",
                "shop_name": shop.get("name"),
                "shop_id": shop.get("id"),
            }
        except AuthenticationError:
            return {"success": False, "message": "Invalid access token or missing API scopes"}
        except ShopifyAPIError as e:
            if e.status_code == 404:
                return {"success": False, "message": f"Store not found: {self.store_domain}"}
            return {"success": False, "message": str(e)}


class ShopifyClientPool:
    """Clients cached per (store domain, API version, access token)."""

    def __init__(self, **client_options: Any):
        self.client_options = client_options
        self._clients: Dict[Tuple[str, str, str], ShopifyClient] = {}

    def get(self, store_domain: str, access_token: str, api_version: str = "2024-01") -> ShopifyClient:
        key = (normalize_store_domain(store_domain), api_version, access_token)
        client = self._clients.get(key)
        if client is None:
            client = ShopifyClient(
                store_domain,
                access_token,
                api_version=api_version,
                **self.client_options,
            )
            self._clients[key] = client
            logger.info(f"Created Shopify client for {key[0]} ({api_version})")
        return client

    async def close_all(self):
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
