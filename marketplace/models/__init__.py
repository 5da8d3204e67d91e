from .catalog import Shop, Product
from .order import Order, OrderLine
from .transaction import Transaction
from .cart import CartItem
from .stock_audit import StockAudit
from .order_status_log import OrderStatusLog

__all__ = [
    "Shop", "Product",
    "Order", "OrderLine",
    "Transaction",
    "CartItem",
    "StockAudit",
    "OrderStatusLog",
]
