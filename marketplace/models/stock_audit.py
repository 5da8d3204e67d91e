# marketplace/models/stock_audit.py
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from marketplace.db import Base

class StockAudit(Base):
    __tablename__ = "stock_audit"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    # "Couleur:Rouge" для legacy, имя варианта для current; None = скалярный остаток
    variant_key = Column(String(255), nullable=True)

    # INCREASE | DECREASE
    change_type = Column(String(16), nullable=False)

    delta      = Column(Integer, nullable=False)        # на сколько изменили (всегда > 0)
    old_stock  = Column(Integer, nullable=False)
    new_stock  = Column(Integer, nullable=False)

    order_id   = Column(Integer, nullable=True, index=True)
    note       = Column(String(500), nullable=True)

    user       = Column(String(64), nullable=False, default="system")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    product = relationship("Product")
