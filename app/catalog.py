from __future__ import annotations

from functools import lru_cache
import json
import logging
import os
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import ConfigDict, Field, TypeAdapter

from app.models import CamelModel


logger = logging.getLogger("glow-core.catalog")

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "catalog.json"

ProductSource = Literal["marketplace", "discovery"]


class _FrozenCamelModel(CamelModel):
    model_config = ConfigDict(frozen=True)


class ActiveIngredient(_FrozenCamelModel):
    name: str
    concentration: Optional[float] = None
    concentration_unit: Optional[str] = None
    is_key_active: bool = False


class ProductFlags(_FrozenCamelModel):
    vegan: bool = False
    cruelty_free: bool = False
    fragrance_free: bool = False
    gluten_free: bool = False
    alcohol_free: bool = False
    silicone_free: bool = False
    plant_based: bool = False


class CatalogItem(_FrozenCamelModel):
    id: int
    brand: str
    name: str
    category: str
    price: float
    rating: float = 0.0
    review_count: int = 0
    in_stock: bool = True
    skin_types: tuple[str, ...] = ()
    concerns: tuple[str, ...] = ()
    key_ingredients: tuple[str, ...] = ()
    active_ingredients: tuple[ActiveIngredient, ...] = ()
    preferences: ProductFlags = Field(default_factory=ProductFlags)
    source: Optional[ProductSource] = None
    description: str = ""
    image: str = ""


_CATALOG = TypeAdapter(tuple[CatalogItem, ...])


def parse_catalog(raw: Union[str, bytes]) -> tuple[CatalogItem, ...]:
    items = _CATALOG.validate_python(json.loads(raw))
    ids = [item.id for item in items]
    if len(set(ids)) != len(ids):
        raise ValueError("catalog contains duplicate product ids")
    return items


def load_catalog(path: Optional[Union[str, Path]] = None) -> tuple[CatalogItem, ...]:
    catalog_path = Path(path or os.getenv("CATALOG_PATH") or DEFAULT_CATALOG_PATH).expanduser()
    items = parse_catalog(catalog_path.read_text(encoding="utf-8"))
    logger.info("catalog_loaded path=%s items=%d", catalog_path, len(items))
    return items


@lru_cache(maxsize=1)
def default_catalog() -> tuple[CatalogItem, ...]:
    return load_catalog()
