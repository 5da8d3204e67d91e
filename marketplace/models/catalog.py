from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, ForeignKey, Integer, Numeric, Boolean, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.db import Base
from marketplace.utils.enums import ProductStatus


class Shop(Base):
    __tablename__ = "shops"
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    products: Mapped[List["Product"]] = relationship("Product", back_populates="shop")


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    shop_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shops.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    status: Mapped[str] = mapped_column(String(24), default=ProductStatus.ACTIVE.value, index=True)

    # агрегированный остаток: скаляр или сумма по вариантам
    stock: Mapped[int] = mapped_column(Integer, default=0)
    in_stock: Mapped[bool] = mapped_column(Boolean, default=False)
    # варианты в одном из двух форматов (legacy-список или {variants, options})
    variants: Mapped[Optional[object]] = mapped_column(JSON, nullable=True)
    # счётчик для compare-and-swap при записи остатков
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    shop: Mapped[Optional["Shop"]] = relationship("Shop", back_populates="products")

    @property
    def is_sellable(self) -> bool:
        return self.status == ProductStatus.ACTIVE.value
