import secrets
import time


def make_reference(prefix: str = "TRX") -> str:
    # TRX-<мс>-<hex>: уникальная ссылка транзакции
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def random_suffix(digits: int = 4) -> str:
    return str(secrets.randbelow(10 ** digits)).zfill(digits)
