# marketplace/models/transaction.py
from typing import Optional
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.db import Base
from marketplace.utils.enums import TransactionStatus, PaymentPurpose


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)

    # TRX-... генерируем сами
    reference: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    # bill_id биллинга; ставится один раз и больше не перезаписывается
    operator_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    # id операции у оператора (ps_transaction_id)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # сумма в минимальных единицах валюты
    amount: Mapped[int] = mapped_column(Integer)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payment_purpose: Mapped[str] = mapped_column(String(32), default=PaymentPurpose.FULL_PAYMENT.value)
    status: Mapped[str] = mapped_column(String(16), default=TransactionStatus.PENDING.value, index=True)

    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="transactions")

    def add_note(self, text: str):
        self.notes = f"{self.notes}\n{text}" if self.notes else text
