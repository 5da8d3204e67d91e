# marketplace/errors.py
from typing import Any, Optional


class ShopError(Exception):
    """Базовая ошибка домена. Роутеры превращают её в JSON-ответ с status_code."""

    status_code = 500
    code = "error"
    retriable = False

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFound(ShopError):
    status_code = 404
    code = "not_found"


class InvalidInput(ShopError):
    status_code = 400
    code = "invalid_input"


class InsufficientStock(ShopError):
    status_code = 400
    code = "insufficient_stock"


class AmountMismatch(ShopError):
    # блокирует подтверждение, транзакция уходит на ручную проверку
    status_code = 422
    code = "amount_mismatch"


class InvalidTransition(ShopError):
    status_code = 409
    code = "invalid_transition"


class StockConflict(ShopError):
    status_code = 409
    code = "stock_conflict"
    retriable = True


class GatewayError(ShopError):
    status_code = 502
    code = "gateway_error"
    retriable = True


class TransactionNotFound(NotFound):
    code = "transaction_not_found"
