"""
Shopify Admin GraphQL client for product reads and writes.

The webhook payload is only a pointer; this client is the source of truth
the sync worker re-fetches from before every mirror write.

Documentation: https://shopify.dev/docs/api/admin-graphql/latest/objects/Product
"""

import logging
from typing import Any, Dict, Optional

import httpx

from catalog_sync.errors import UpstreamAPIError
from catalog_sync.integrations.base import EntitySource

logger = logging.getLogger(__name__)

SHOPIFY_API_VERSION = "2024-01"
PRODUCT_GID_PREFIX = "gid://shopify/Product/"

PRODUCT_FIELDS = """
    id
    legacyResourceId
    title
    description
    handle
    vendor
    productType
    tags
    status
    updatedAt
    featuredImage { url }
    priceRangeV2 { minVariantPrice { amount currencyCode } }
"""

PRODUCT_QUERY = """
query product($id: ID!) {
    product(id: $id) {
        %s
    }
}
""" % PRODUCT_FIELDS

PRODUCT_CREATE_MUTATION = """
mutation productCreate($input: ProductInput!) {
    productCreate(input: $input) {
        product {
            %s
        }
        userErrors { field message }
    }
}
""" % PRODUCT_FIELDS

PRODUCT_UPDATE_MUTATION = """
mutation productUpdate($input: ProductInput!) {
    productUpdate(input: $input) {
        product {
            %s
        }
        userErrors { field message }
    }
}
""" % PRODUCT_FIELDS


class ShopifyAPIError(UpstreamAPIError):
    """Error communicating with Shopify Admin API."""
    pass


def to_product_gid(product_id: str) -> str:
    """Webhooks carry numeric IDs; the GraphQL API wants global IDs."""
    product_id = str(product_id).strip()
    if product_id.startswith("gid://"):
        return product_id
    return f"{PRODUCT_GID_PREFIX}{product_id}"


def to_legacy_id(product_id: str) -> str:
    """Numeric product ID (the form used in webhooks and cache keys)."""
    product_id = str(product_id).strip()
    if product_id.startswith(PRODUCT_GID_PREFIX):
        return product_id[len(PRODUCT_GID_PREFIX):]
    return product_id


def _is_throttled(errors: Any) -> bool:
    for error in errors or []:
        code = (error.get("extensions") or {}).get("code") if isinstance(error, dict) else None
        if code == "THROTTLED":
            return True
    return False


class ShopifyProductClient(EntitySource):
    """
    Client for Shopify product operations.

    Handles:
    - Fetching a product by ID (None when it does not exist)
    - Creating and updating products

    SECURITY: Access token is sent as a header only; never logged.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = SHOPIFY_API_VERSION,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize product client for a specific shop.

        Args:
            shop_domain: Shopify store domain (e.g., 'mystore.myshopify.com')
            access_token: Admin API access token
            api_version: Admin API version
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not shop_domain:
            raise ValueError("shop_domain is required")
        if not access_token:
            raise ValueError("access_token is required")

        self.shop_domain = shop_domain.replace("https://", "").replace("http://", "").rstrip("/")
        self.api_version = api_version
        self.graphql_url = f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0)),
            headers={
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": access_token,
            },
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _execute_graphql(self, query: str, variables: Optional[dict] = None) -> dict:
        """
        Execute a GraphQL query against Shopify Admin API.

        Raises:
            ShopifyAPIError: If the API call fails
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = await self._client.post(self.graphql_url, json=payload)
        except httpx.TimeoutException as e:
            logger.warning("Shopify API timeout", extra={
                "shop_domain": self.shop_domain,
                "error": str(e),
            })
            raise ShopifyAPIError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            logger.warning("Shopify API request error", extra={
                "shop_domain": self.shop_domain,
                "error": str(e),
            })
            raise ShopifyAPIError(f"Request error: {e}") from e

        if response.status_code == 401:
            logger.error("Shopify API authentication failed", extra={
                "shop_domain": self.shop_domain,
                "status_code": response.status_code,
            })
            raise ShopifyAPIError(
                "Authentication failed - access token may be invalid or expired",
                status_code=401,
            )

        if response.status_code == 429:
            logger.warning("Shopify API rate limited", extra={
                "shop_domain": self.shop_domain,
                "retry_after": response.headers.get("Retry-After"),
            })
            raise ShopifyAPIError(
                "Rate limited - please retry after a delay",
                status_code=429,
            )

        if response.status_code >= 400:
            logger.error("Shopify API error", extra={
                "shop_domain": self.shop_domain,
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            raise ShopifyAPIError(
                f"Shopify API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError as e:
            raise ShopifyAPIError(
                "Shopify API returned invalid JSON",
                status_code=response.status_code,
            ) from e

        if result.get("errors"):
            throttled = _is_throttled(result["errors"])
            logger.error("GraphQL errors", extra={
                "shop_domain": self.shop_domain,
                "errors": result["errors"],
                "throttled": throttled,
            })
            raise ShopifyAPIError(
                f"GraphQL errors: {result['errors']}",
                response=result,
                transient=throttled,
            )

        return result.get("data") or {}

    async def fetch_by_id(self, product_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a product.

        Args:
            product_id: Numeric ID or global ID

        Returns:
            Product dict with ``id`` set to the numeric ID, or None if the
            product does not exist
        """
        data = await self._execute_graphql(
            PRODUCT_QUERY, {"id": to_product_gid(product_id)}
        )
        product = data.get("product")
        if product is None:
            logger.info("Shopify product not found", extra={
                "shop_domain": self.shop_domain,
                "product_id": product_id,
            })
            return None
        return self._normalize(product)

    async def create(self, product_input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a product.

        Raises:
            ShopifyAPIError: On API failure or user errors (permanent)
        """
        data = await self._execute_graphql(
            PRODUCT_CREATE_MUTATION, {"input": product_input}
        )
        return self._mutation_product(data.get("productCreate") or {}, "productCreate")

    async def update(self, product_id: str, product_input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update a product.

        Raises:
            ShopifyAPIError: On API failure or user errors (permanent)
        """
        variables = {"input": dict(product_input, id=to_product_gid(product_id))}
        data = await self._execute_graphql(PRODUCT_UPDATE_MUTATION, variables)
        return self._mutation_product(data.get("productUpdate") or {}, "productUpdate")

    def _mutation_product(self, result: Dict[str, Any], operation: str) -> Dict[str, Any]:
        user_errors = result.get("userErrors") or []
        if user_errors:
            logger.warning("Shopify product mutation rejected", extra={
                "shop_domain": self.shop_domain,
                "operation": operation,
                "user_errors": user_errors,
            })
            raise ShopifyAPIError(
                f"{operation} failed: {user_errors}",
                response=result,
                transient=False,
            )

        product = result.get("product")
        if product is None:
            raise ShopifyAPIError(
                f"{operation} returned no product",
                response=result,
                transient=False,
            )
        return self._normalize(product)

    @staticmethod
    def _normalize(product: Dict[str, Any]) -> Dict[str, Any]:
        normalized = dict(product)
        normalized["gid"] = product.get("id")
        normalized["id"] = str(
            product.get("legacyResourceId") or to_legacy_id(product.get("id", ""))
        )
        return normalized
