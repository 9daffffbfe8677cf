"""
Catalog Service

Read access to the products table plus the download counter.
"""
import re
import logging
from typing import Dict, Iterable, List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ProductModel
from ..models.catalog import Product

logger = logging.getLogger(__name__)


def _to_pydantic(p: ProductModel) -> Product:
    return Product(
        id=p.id,
        title=p.title,
        description=p.description,
        category=p.category,
        price=p.price,
        price_usd=p.price_usd,
        pdf_url=p.pdf_url,
        cover_url=p.cover_url,
        downloads=p.downloads or 0,
    )


def slugify(title: str) -> str:
    """
    URL slug used in chat deep links.

    Example:
        "Side Hustle Guide 2.0" -> "side-hustle-guide-2-0"
    """
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


async def get_products_by_ids(db: AsyncSession, product_ids: Iterable[str]) -> Dict[str, Product]:
    """Products keyed by id; ids not in the catalog are simply absent."""
    product_ids = list(product_ids)
    if not product_ids:
        return {}

    result = await db.execute(select(ProductModel).where(ProductModel.id.in_(product_ids)))
    return {p.id: _to_pydantic(p) for p in result.scalars().all()}


async def get_product(db: AsyncSession, product_id: str) -> Optional[Product]:
    result = await db.execute(select(ProductModel).where(ProductModel.id == product_id))
    product = result.scalar_one_or_none()
    return _to_pydantic(product) if product else None


async def list_products(db: AsyncSession, limit: int = 10) -> List[Product]:
    result = await db.execute(
        select(ProductModel).order_by(ProductModel.created_at.desc()).limit(limit)
    )
    return [_to_pydantic(p) for p in result.scalars().all()]


async def find_product_by_slug(db: AsyncSession, slug: str) -> Optional[Product]:
    """Product whose slugified title equals slug."""
    slug = slug.strip().lower()
    result = await db.execute(select(ProductModel))
    for p in result.scalars().all():
        if slugify(p.title) == slug:
            return _to_pydantic(p)

    logger.info(f"No product matches slug: {slug}")
    return None


async def increment_downloads(db: AsyncSession, product_id: str) -> None:
    """Best-effort download counter; failures are logged, not raised."""
    try:
        await db.execute(
            update(ProductModel)
            .where(ProductModel.id == product_id)
            .values(downloads=ProductModel.downloads + 1)
        )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.warning(f"Failed to increment downloads for {product_id}: {e}")
