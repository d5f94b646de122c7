import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


class Product(BaseModel):
    id: int
    name: str
    price: float
    created_at: datetime = Field(alias="createdAt")

    class Config:
        populate_by_name = True


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Mock fallback set: (name, price, age in days)
SEED_PRODUCTS = [
    ("Laptop", 999.99, 30),
    ("Mouse", 29.99, 15),
    ("Keyboard", 79.99, 7),
]


class ProductStore:
    """In-memory product list, used for every write and as the read fallback
    when HANA is unavailable. All access goes through one lock."""

    def __init__(self, products: Optional[List[Product]] = None):
        self._lock = threading.Lock()
        self._products: List[Product] = list(products or [])
        self._last_id = max((p.id for p in self._products), default=0)

    @classmethod
    def seeded(cls) -> "ProductStore":
        now = utcnow()
        return cls([
            Product(id=i, name=name, price=price, created_at=now - timedelta(days=age))
            for i, (name, price, age) in enumerate(SEED_PRODUCTS, start=1)
        ])

    def list(self) -> List[Product]:
        with self._lock:
            return [p.model_copy() for p in sorted(self._products, key=lambda p: p.id)]

    def get(self, product_id: int) -> Optional[Product]:
        with self._lock:
            product = self._find(product_id)
            return product.model_copy() if product else None

    def create(self, name: str, price: float) -> Product:
        with self._lock:
            # Deleted ids are never handed out again
            new_id = max(self._last_id, max((p.id for p in self._products), default=0)) + 1
            self._last_id = new_id
            product = Product(id=new_id, name=name, price=price, created_at=utcnow())
            self._products.append(product)
            return product.model_copy()

    def update(self, product_id: int, name: str, price: float) -> Optional[Product]:
        with self._lock:
            product = self._find(product_id)
            if product is None:
                return None
            product.name = name
            product.price = price
            return product.model_copy()

    def delete(self, product_id: int) -> bool:
        with self._lock:
            product = self._find(product_id)
            if product is None:
                return False
            self._products.remove(product)
            return True

    def _find(self, product_id: int) -> Optional[Product]:
        return next((p for p in self._products if p.id == product_id), None)
