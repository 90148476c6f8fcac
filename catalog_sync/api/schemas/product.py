"""
Pydantic schemas for the products API.

Field names follow Shopify's ProductInput so the body can be passed through.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProductInput(BaseModel):
    """Request body for POST/PUT /api/products."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    descriptionHtml: Optional[str] = None
    handle: Optional[str] = None
    vendor: Optional[str] = None
    productType: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[str] = Field(None, examples=["ACTIVE", "DRAFT", "ARCHIVED"])

    def to_shopify_input(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ProductResponse(BaseModel):
    """Product snapshot as returned by Shopify."""
    model_config = ConfigDict(extra="allow")

    id: str
    title: Optional[str] = None
