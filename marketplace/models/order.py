# marketplace/models/order.py
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.db import Base
from marketplace.utils.enums import OrderStatus, PaymentStatus


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    # COM-2025-070001
    number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    shop_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shops.id"), nullable=True, index=True)

    customer_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_city: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    customer_district: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    customer_instructions: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    shipping_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    taxes: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    amount_paid: Mapped[int] = mapped_column(Integer, default=0)

    # === СТАТУСЫ ===
    status: Mapped[str] = mapped_column(String(24), default=OrderStatus.PENDING.value, index=True)
    payment_status: Mapped[str] = mapped_column(String(24), default=PaymentStatus.PENDING.value, index=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    lines: Mapped[List["OrderLine"]] = relationship(
        "OrderLine", back_populates="order", cascade="all, delete-orphan", order_by="OrderLine.id"
    )
    transactions = relationship("Transaction", back_populates="order", order_by="Transaction.id")

    @property
    def amount_remaining(self) -> Decimal:
        rest = Decimal(str(self.total or 0)) - Decimal(int(self.amount_paid or 0))
        return rest if rest > 0 else Decimal("0")


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)

    product_id: Mapped[int] = mapped_column(Integer, index=True)
    # имя копируем: строка переживает изменение/удаление товара
    product_name: Mapped[str] = mapped_column(String(255))

    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    selected_variant: Mapped[Optional[object]] = mapped_column(JSON, nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="lines")

    def recompute_line(self):
        self.line_total = Decimal(str(self.unit_price)) * int(self.quantity)
