"""
Pydantic Catalog and Identity Models
"""
from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Product(BaseModel):
    """Catalog entry. pdf_url is a private storage path, never serialized to clients."""
    id: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    price: float
    price_usd: Optional[float] = None
    pdf_url: Optional[str] = None
    cover_url: Optional[str] = None
    downloads: int = 0


class Identity(BaseModel):
    """Authenticated caller as resolved by the identity provider."""
    id: str
    is_admin: bool = False
    email: Optional[str] = None


class DownloadGrant(BaseModel):
    """Response of POST /downloads/request."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    download_url: str
    title: str
    expires_in_seconds: int
