# marketplace/services/sweeper.py
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace import config
from marketplace.db import SessionLocal
from marketplace.errors import GatewayError, ShopError
from marketplace.models import Transaction
from marketplace.services.billing import BillingGateway
from marketplace.services.payments import PaymentService
from marketplace.utils.enums import TransactionStatus

log = logging.getLogger(__name__)


def expire_stale_transactions(db: Session, gateway: Optional[BillingGateway] = None,
                              ttl_minutes: Optional[int] = None,
                              now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Транзакции pending старше TTL: со счётом в биллинге переопрашиваем,
    без счёта помечаем failed. Ошибка биллинга пропускает транзакцию до следующего прохода.
    """
    ttl = config.PENDING_TRANSACTION_TTL_MINUTES if ttl_minutes is None else ttl_minutes
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=ttl)
    payments = PaymentService(db, gateway=gateway)
    stats = {"checked": 0, "confirmed": 0, "expired": 0, "still_pending": 0, "skipped": 0}

    ids = db.execute(
        select(Transaction.id)
        .where(Transaction.status == TransactionStatus.PENDING.value, Transaction.created_at < cutoff)
        .order_by(Transaction.id)
    ).scalars().all()

    for tx_id in ids:
        stats["checked"] += 1
        tx = db.get(Transaction, tx_id)
        if tx.operator_reference:
            try:
                result = payments.verify_payment(tx.operator_reference)
            except GatewayError as e:
                log.warning("sweeper: %s skipped, gateway error: %s", tx.reference, e.message)
                stats["skipped"] += 1
                continue
            except ShopError as e:
                # сумма не сошлась и т.п.: транзакция уже помечена на ручную проверку
                log.warning("sweeper: %s not confirmed: %s", tx.reference, e.message)
                stats["skipped"] += 1
                continue
            if result["confirmed"]:
                stats["confirmed"] += 1
                continue
            stats["still_pending"] += 1
            continue

        try:
            payments.update_status(tx.id, TransactionStatus.FAILED.value,
                                   note=f"Истёк срок ожидания оплаты ({ttl} мин.)", user="sweeper")
            stats["expired"] += 1
        except ShopError as e:
            log.warning("sweeper: %s not expired: %s", tx.reference, e.message)
            stats["skipped"] += 1

    if stats["checked"]:
        log.info("sweeper: %s", stats)
    return stats


class Job:
    def __init__(self, name: str, description: str, interval: int, func: Callable[..., Dict]):
        self.name = name
        self.description = description
        self.interval = interval
        self.func = func
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[Dict] = None
        self.last_error: Optional[str] = None
        self._lock = threading.Lock()

    def run(self, db: Optional[Session] = None, **kwargs) -> Dict:
        """Запуск вручную или из фонового цикла; параллельно один и тот же job не идёт."""
        if not self._lock.acquire(blocking=False):
            return {"skipped": "already running"}
        own = db is None
        db = db or SessionLocal()
        try:
            self.last_result = self.func(db, **kwargs)
            self.last_error = None
            return self.last_result
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            raise
        finally:
            self.last_run = datetime.utcnow()
            if own:
                db.close()
            self._lock.release()

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "description": self.description,
            "interval_seconds": self.interval,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


JOBS: Dict[str, Job] = {
    "expire-transactions": Job(
        name="expire-transactions",
        description="Переопрос и закрытие зависших транзакций pending",
        interval=config.SWEEP_INTERVAL_SECONDS,
        func=expire_stale_transactions,
    ),
}

_stop = threading.Event()
_thread: Optional[threading.Thread] = None


def sweep_loop():
    """Цикл фоновых задач"""
    while not _stop.is_set():
        for job in JOBS.values():
            try:
                job.run()
            except Exception:
                log.exception("sweeper: job %s failed", job.name)
        _stop.wait(config.SWEEP_INTERVAL_SECONDS)


def start_sweeper() -> bool:
    """Запускаем sweeper в фоне"""
    global _thread
    if not config.SWEEPER_ENABLED or (_thread is not None and _thread.is_alive()):
        return False
    _stop.clear()
    _thread = threading.Thread(target=sweep_loop, name="sweeper", daemon=True)
    _thread.start()
    log.info("sweeper started, interval %ss", config.SWEEP_INTERVAL_SECONDS)
    return True


def stop_sweeper():
    _stop.set()
