"""
Contentful Management API client for mirrored product entries.

One entry of content type ``product`` per upstream product. The entry ID is
derived from the upstream ID, so concurrent creates for one product collide
on the same entry instead of producing two. Writes are idempotent:
- upsert creates the entry if absent, otherwise overwrites its fields
- a create that loses the race gets 409, which is retried as an update
- delete of an absent entry is a success

Documentation: https://www.contentful.com/developers/docs/references/content-management-api/
"""

import logging
import re
from typing import Any, Dict, Optional

import httpx

from catalog_sync.errors import UpstreamAPIError
from catalog_sync.integrations.base import ContentMirror

logger = logging.getLogger(__name__)

CONTENTFUL_API_BASE_URL = "https://api.contentful.com"
CONTENT_TYPE_HEADER = "application/vnd.contentful.management.v1+json"
SOURCE_ID_FIELD = "sourceId"

# Contentful entry IDs: letters, digits, dash, underscore, dot; at most 64
_ENTRY_ID_INVALID = re.compile(r"[^A-Za-z0-9\-_.]")
MAX_ENTRY_ID_LENGTH = 64


class ContentfulAPIError(UpstreamAPIError):
    """Error communicating with Contentful Management API."""
    pass


class ContentfulMirrorClient(ContentMirror):
    """
    Mirror of upstream products in Contentful.

    SECURITY: Management token is sent as a header only; never logged.
    """

    def __init__(
        self,
        space_id: str,
        management_token: str,
        environment: str = "master",
        locale: str = "en-US",
        content_type: str = "product",
        publish: bool = True,
        timeout_seconds: float = 10.0,
        base_url: str = CONTENTFUL_API_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize mirror client.

        Args:
            space_id: Contentful space ID
            management_token: Content Management API token
            environment: Contentful environment
            locale: Locale used for every field value
            content_type: Content type ID of mirrored entries
            publish: Publish entries after writing them
            timeout_seconds: Per-request timeout
            base_url: API base URL
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not space_id:
            raise ValueError("space_id is required")
        if not management_token:
            raise ValueError("management_token is required")

        self.space_id = space_id
        self.environment = environment
        self.locale = locale
        self.content_type = content_type
        self.publish = publish
        self._entries_url = (
            f"{base_url.rstrip('/')}/spaces/{space_id}/environments/{environment}/entries"
        )

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0)),
            headers={
                "Authorization": f"Bearer {management_token}",
                "Content-Type": CONTENT_TYPE_HEADER,
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

    async def _request(
        self,
        method: str,
        url: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> Optional[httpx.Response]:
        """
        Send a request and map failures to ContentfulAPIError.

        Returns:
            The response, or None for a 404 when ``allow_not_found`` is set
        """
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Contentful API timeout", extra={
                "space_id": self.space_id,
                "method": method,
                "error": str(e),
            })
            raise ContentfulAPIError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            logger.warning("Contentful API request error", extra={
                "space_id": self.space_id,
                "method": method,
                "error": str(e),
            })
            raise ContentfulAPIError(f"Request error: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None

        if response.status_code == 409:
            # Version conflict: someone else wrote the entry; re-read and retry
            logger.warning("Contentful version conflict", extra={
                "space_id": self.space_id,
                "url": url,
            })
            raise ContentfulAPIError(
                "Entry version conflict",
                status_code=409,
                transient=True,
            )

        if response.status_code >= 400:
            logger.error("Contentful API error", extra={
                "space_id": self.space_id,
                "method": method,
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            raise ContentfulAPIError(
                f"Contentful API error: {response.status_code}",
                status_code=response.status_code,
            )

        return response

    def _localize(self, fields: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        return {name: {self.locale: value} for name, value in fields.items()}

    def entry_id_for(self, source_id: str) -> str:
        """Deterministic entry ID for ``source_id``."""
        entry_id = _ENTRY_ID_INVALID.sub("-", f"{self.content_type}-{source_id}")
        return entry_id[:MAX_ENTRY_ID_LENGTH]

    async def find_entry(self, source_id: str) -> Optional[Dict[str, Any]]:
        """Entry mirroring ``source_id``, or None."""
        response = await self._request(
            "GET",
            f"{self._entries_url}/{self.entry_id_for(source_id)}",
            allow_not_found=True,
        )
        return response.json() if response is not None else None

    async def upsert(self, source_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create or overwrite the entry for ``source_id``.

        Args:
            source_id: Upstream product ID
            fields: Mirror fields (sourceId is added)

        Returns:
            The written entry

        Raises:
            ContentfulAPIError: If the API call fails. A create that races
                another writer raises a transient 409.
        """
        body = {"fields": self._localize(dict(fields, **{SOURCE_ID_FIELD: source_id}))}
        entry_url = f"{self._entries_url}/{self.entry_id_for(source_id)}"
        existing = await self.find_entry(source_id)

        if existing is None:
            # PUT without a version creates the entry at this ID, or 409s if it exists
            response = await self._request(
                "PUT",
                entry_url,
                json=body,
                headers={"X-Contentful-Content-Type": self.content_type},
            )
            action = "created"
        else:
            response = await self._request(
                "PUT",
                entry_url,
                json=body,
                headers={"X-Contentful-Version": str(existing["sys"]["version"])},
            )
            action = "updated"

        entry = response.json()

        if self.publish:
            entry = await self._publish(entry)

        logger.info("Contentful entry written", extra={
            "source_id": source_id,
            "entry_id": entry.get("sys", {}).get("id"),
            "action": action,
        })
        return entry

    async def _publish(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        sys_info = entry["sys"]
        response = await self._request(
            "PUT",
            f"{self._entries_url}/{sys_info['id']}/published",
            headers={"X-Contentful-Version": str(sys_info["version"])},
        )
        return response.json()

    async def delete(self, source_id: str) -> None:
        """
        Delete the entry for ``source_id``. An absent entry is a success.

        Raises:
            ContentfulAPIError: If the API call fails
        """
        existing = await self.find_entry(source_id)
        if existing is None:
            logger.info("Contentful entry already absent", extra={
                "source_id": source_id,
            })
            return

        sys_info = existing["sys"]
        entry_url = f"{self._entries_url}/{sys_info['id']}"

        if sys_info.get("publishedVersion") is not None:
            # Published entries must be unpublished before deletion
            await self._request(
                "DELETE",
                f"{entry_url}/published",
                allow_not_found=True,
                headers={"X-Contentful-Version": str(sys_info["version"])},
            )

        await self._request("DELETE", entry_url, allow_not_found=True)

        logger.info("Contentful entry deleted", extra={
            "source_id": source_id,
            "entry_id": sys_info["id"],
        })
