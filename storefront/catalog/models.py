"""
Catalog — 商品モデル

1 つのバッグは複数のバリアント (サイズ × カラー) を持ち、
価格と在庫はバリアントごとに管理する。
"""

from decimal import Decimal
from enum import Enum
from typing import NamedTuple
from uuid import UUID

from pydantic import BaseModel, Field


class BagCategory(str, Enum):
    HANDBAG = "Handbag"
    SHOULDER_BAG = "Shoulder Bag"
    TOTE = "Tote"
    CLUTCH = "Clutch"
    BACKPACK = "Backpack"
    CROSSBODY = "Crossbody"


class BagSize(str, Enum):
    SMALL = "Small"
    MEDIUM = "Medium"
    LARGE = "Large"
    EXTRA_LARGE = "Extra Large"


class VariantKey(NamedTuple):
    size: str
    color: str


class VariantIn(BaseModel):
    size: BagSize
    color: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0, decimal_places=2)
    stock: int = Field(..., ge=0)
    sku: str = Field(..., min_length=1)


class Variant(BaseModel):
    id: UUID
    bag_id: UUID
    size: str
    color: str
    price: Decimal
    stock: int
    sku: str

    @property
    def key(self) -> VariantKey:
        return VariantKey(self.size, self.color)


class Bag(BaseModel):
    id: UUID
    name: str
    description: str
    category: str
    brand: str
    featured: bool
    variants: list[Variant]
