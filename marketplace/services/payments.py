# marketplace/services/payments.py
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketplace.errors import (
    AmountMismatch, InsufficientStock, InvalidInput, InvalidTransition,
    NotFound, TransactionNotFound,
)
from marketplace.models import Order, Product, Transaction
from marketplace.services import fees
from marketplace.services.billing import BillingGateway, Payer, map_payment_system
from marketplace.services.status_machine import OrderStateMachine
from marketplace.services.variants import available_stock
from marketplace.telegram.telegram_notify import TelegramNotifier, notifier as default_notifier
from marketplace.utils.enums import (
    OrderStatus, PaymentMethod, PaymentPurpose, PaymentStatus, TransactionStatus, values,
)
from marketplace.utils.tokens import make_reference

log = logging.getLogger(__name__)

T = TransactionStatus

# 🔹 Разрешённые переходы транзакции
TX_NEXT = {
    T.PENDING: {T.PAID, T.FAILED},
    T.PAID: {T.REFUNDED},
    T.FAILED: set(),
    T.REFUNDED: set(),
}

# эти поля можно менять через PUT /transactions/{id}
EDITABLE_FIELDS = ("payment_method", "payment_purpose", "phone_number", "description", "notes")


def _enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInput(f"Некорректное значение {label}: {value}",
                           details={"allowed": values(enum_cls)})


class PaymentService:
    """
    Жизненный цикл транзакции: pending → paid | failed, paid → refunded.

    Подтверждение оплаты (опрос биллинга или ручное) всегда идёт одним путём:
    сверка суммы → условный UPDATE pending→paid → пересчёт заказа →
    подтверждение заказа через машину статусов (склад списывает только она).
    """

    def __init__(self, db: Session, gateway: Optional[BillingGateway] = None,
                 notifier: Optional[TelegramNotifier] = None):
        self.db = db
        self._gateway = gateway
        self.notifier = notifier or default_notifier
        self.machine = OrderStateMachine(db)

    @property
    def gateway(self) -> BillingGateway:
        if self._gateway is None:
            self._gateway = BillingGateway.from_config()
        return self._gateway

    # =====================================================================
    # Чтение
    # =====================================================================
    def get_transaction(self, transaction_id: int) -> Transaction:
        tx = self.db.get(Transaction, transaction_id)
        if tx is None:
            raise TransactionNotFound(f"Транзакция {transaction_id} не найдена")
        return tx

    def get_by_reference(self, reference: str) -> Transaction:
        tx = self.db.execute(
            select(Transaction).where(Transaction.reference == reference)
        ).scalar_one_or_none()
        if tx is None:
            raise TransactionNotFound(f"Транзакция {reference} не найдена")
        return tx

    def list_transactions(self, page: int = 1, limit: int = 20, status: Optional[str] = None):
        q = select(Transaction)
        if status:
            q = q.where(Transaction.status == _enum(TransactionStatus, status, "status").value)
        return self._paginate(q, page, limit)

    def list_by_order(self, order_id: int):
        return self.db.execute(
            select(Transaction).where(Transaction.order_id == order_id).order_by(Transaction.id)
        ).scalars().all()

    def list_by_shop(self, shop_id: int, page: int = 1, limit: int = 20):
        q = select(Transaction).join(Order, Transaction.order_id == Order.id).where(Order.shop_id == shop_id)
        return self._paginate(q, page, limit)

    def stats(self, shop_id: Optional[int] = None) -> Dict[str, Any]:
        q = select(Transaction.status, Transaction.payment_method,
                   func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0))
        if shop_id is not None:
            q = q.join(Order, Transaction.order_id == Order.id).where(Order.shop_id == shop_id)
        rows = self.db.execute(q.group_by(Transaction.status, Transaction.payment_method)).all()

        by_status: Dict[str, int] = {}
        by_method: Dict[str, int] = {}
        total_count = 0
        paid_amount = 0
        for status, method, count, amount in rows:
            by_status[status] = by_status.get(status, 0) + count
            key = method or "unknown"
            by_method[key] = by_method.get(key, 0) + count
            total_count += count
            if status == T.PAID.value:
                paid_amount += int(amount)

        paid_count = by_status.get(T.PAID.value, 0)
        return {
            "total_transactions": total_count,
            "total_paid_amount": paid_amount,
            "by_status": by_status,
            "by_method": by_method,
            "success_rate": round(paid_count * 100.0 / total_count, 2) if total_count else 0.0,
        }

    # =====================================================================
    # Создание / изменение
    # =====================================================================
    def create_transaction(self, order_id: Optional[int], amount: int,
                           payment_method: Optional[str] = None,
                           payment_purpose: Optional[str] = None,
                           phone_number: Optional[str] = None,
                           description: Optional[str] = None,
                           reference: Optional[str] = None,
                           operator_reference: Optional[str] = None) -> Transaction:
        """Создаёт транзакцию pending. Без назначения угадываем его по сумме."""
        amount = int(amount)
        if amount <= 0:
            raise InvalidInput("Сумма транзакции должна быть больше нуля")
        method = _enum(PaymentMethod, payment_method, "payment_method").value if payment_method else None

        order = None
        if order_id is not None:
            order = self._get_order(order_id)

        if payment_purpose:
            purpose = _enum(PaymentPurpose, payment_purpose, "payment_purpose")
        elif order is not None:
            purpose = fees.detect_purpose(order, amount)
            log.info("order %s: amount %s detected as %s", order.number, amount, purpose.value)
        else:
            purpose = PaymentPurpose.FULL_PAYMENT

        reference = reference or make_reference()
        if self.db.execute(select(Transaction.id).where(Transaction.reference == reference)).first():
            raise InvalidInput(f"Транзакция с референсом {reference} уже существует")

        tx = Transaction(
            order_id=order_id,
            reference=reference,
            operator_reference=operator_reference,
            amount=amount,
            payment_method=method,
            payment_purpose=purpose.value,
            status=T.PENDING.value,
            phone_number=phone_number,
            description=description or self._describe(order, purpose),
        )
        try:
            self.db.add(tx)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(tx)
        return tx

    def update_transaction(self, transaction_id: int, fields: Dict[str, Any]) -> Transaction:
        tx = self.get_transaction(transaction_id)
        unknown = set(fields) - set(EDITABLE_FIELDS) - {"operator_reference"}
        if unknown:
            raise InvalidInput("Эти поля нельзя менять", details={"fields": sorted(unknown)})

        if "payment_method" in fields and fields["payment_method"] is not None:
            fields["payment_method"] = _enum(PaymentMethod, fields["payment_method"], "payment_method").value
        if "payment_purpose" in fields and fields["payment_purpose"] is not None:
            if tx.status != T.PENDING.value:
                raise InvalidInput("Назначение можно менять только у транзакции в ожидании")
            fields["payment_purpose"] = _enum(PaymentPurpose, fields["payment_purpose"], "payment_purpose").value
        if fields.get("operator_reference"):
            # bill_id выдаётся один раз
            if tx.operator_reference and tx.operator_reference != fields["operator_reference"]:
                raise InvalidInput("Референс оператора уже установлен",
                                   details={"operator_reference": tx.operator_reference})

        for k, v in fields.items():
            setattr(tx, k, v)
        tx.updated_at = datetime.utcnow()
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(tx)
        return tx

    def update_status(self, transaction_id: int, status: str, note: Optional[str] = None,
                      user: str = "admin") -> Transaction:
        """Ручная смена статуса через ту же машину состояний, что и опрос биллинга."""
        target = _enum(TransactionStatus, status, "status")
        tx = self._lock(select(Transaction).where(Transaction.id == transaction_id))
        if tx is None:
            raise TransactionNotFound(f"Транзакция {transaction_id} не найдена")

        current = T(tx.status)
        if current == target:
            return tx
        if target not in TX_NEXT[current]:
            raise InvalidTransition(
                f"Недопустимый переход транзакции: {current.value} → {target.value}",
                details={"from": current.value, "to": target.value},
            )

        try:
            if target == T.PAID:
                self._check_amount(tx)
                self._confirm(tx, note=note or f"Оплата подтверждена вручную ({user})", user=user)
            elif target == T.FAILED:
                self._cas(tx, T.PENDING, T.FAILED, notes=self._append(tx, note or f"Отклонена ({user})"))
            else:
                self._cas(tx, T.PAID, T.REFUNDED, notes=self._append(tx, note or f"Возврат ({user})"))
                if tx.order_id is not None:
                    self._sync_order(tx.order_id, tx, user=user)
            self.db.commit()
        except AmountMismatch:
            # флаг ручной проверки сохраняем, подтверждение не проходит
            self.db.commit()
            raise
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(tx)
        if target == T.PAID:
            self._notify_paid(tx)
        return tx

    # =====================================================================
    # Инициация оплаты
    # =====================================================================
    def initiate_payment(self, order_id: int, payment_method: str,
                         phone_number: Optional[str] = None,
                         payment_purpose: Optional[str] = None,
                         amount: Optional[int] = None,
                         description: Optional[str] = None) -> Transaction:
        """
        Проверяет наличие всех товаров заказа и создаёт транзакцию pending.
        Сумма = ожидаемая для назначения; для депозита/пополнения её передаёт клиент.
        """
        method = _enum(PaymentMethod, payment_method, "payment_method")
        order = self._get_order(order_id)
        if order.status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
            raise InvalidInput(f"Заказ {order.number} закрыт ({order.status})")
        if order.status == OrderStatus.PENDING.value:
            self._check_availability(order)

        if payment_purpose:
            purpose = _enum(PaymentPurpose, payment_purpose, "payment_purpose")
        elif amount is not None:
            purpose = fees.detect_purpose(order, amount)
        else:
            purpose = PaymentPurpose.FULL_PAYMENT

        expected = fees.expected_amount(order, purpose)
        if expected is None:
            if not amount or int(amount) <= 0:
                raise InvalidInput(f"Для {purpose.value} нужно указать сумму")
            amount = int(amount)
        elif amount is not None:
            amount = fees.verify_amount(order, purpose, amount)
        else:
            amount = expected
        if amount <= 0:
            raise InvalidInput(f"Нечего оплачивать для {purpose.value}",
                               details=fees.breakdown(order, purpose, amount))

        tx = Transaction(
            order_id=order.id,
            reference=make_reference(),
            amount=amount,
            payment_method=method.value,
            payment_purpose=purpose.value,
            status=T.PENDING.value,
            phone_number=phone_number,
            description=description or self._describe(order, purpose),
        )
        try:
            self.db.add(tx)
            order.payment_method = method.value
            if order.payment_status != PaymentStatus.PAID.value:
                order.payment_status = PaymentStatus.PENDING.value
            order.updated_at = datetime.utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(tx)
        log.info("order %s: payment %s initiated (%s, %s)", order.number, tx.reference, purpose.value, amount)
        return tx

    def initiate_mobile_payment(self, reference: str, msisdn: str, payment_system: str,
                                email: Optional[str] = None, last_name: Optional[str] = None,
                                first_name: Optional[str] = None,
                                description: Optional[str] = None) -> Dict[str, Any]:
        """Счёт в биллинге + USSD-пуш на телефон плательщика. Возвращает bill_id."""
        tx = self.get_by_reference(reference)
        if tx.status != T.PENDING.value:
            raise InvalidInput(f"Транзакция {reference} уже в статусе {tx.status}")

        token = self.gateway.authenticate()
        bill_id = tx.operator_reference
        if not bill_id:
            bill_id = self.gateway.create_invoice(
                Payer(email=email, msisdn=msisdn, last_name=last_name, first_name=first_name),
                amount=tx.amount, reference=tx.reference,
                description=description or tx.description, token=token,
            )

        # bill_id сохраняем до пуша: счёт уже выставлен, и его оплату надо уметь найти
        try:
            self._attach_bill(tx, bill_id)
            tx.phone_number = tx.phone_number or msisdn
            if payment_system:
                tx.payment_method = map_payment_system(payment_system)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.gateway.push_ussd(bill_id, msisdn, payment_system, token=token)
        return {"bill_id": bill_id, "transaction": tx}

    def initiate_card_payment(self, transaction_id: int, return_url: str,
                              email: Optional[str] = None, msisdn: Optional[str] = None,
                              last_name: Optional[str] = None,
                              first_name: Optional[str] = None) -> Dict[str, Any]:
        """Счёт в биллинге и ссылка на страницу оплаты картой."""
        tx = self.get_transaction(transaction_id)
        if tx.status != T.PENDING.value:
            raise InvalidInput(f"Транзакция {tx.reference} уже в статусе {tx.status}")

        bill_id = tx.operator_reference
        if not bill_id:
            bill_id = self.gateway.create_invoice(
                Payer(email=email or "client@example.com", msisdn=msisdn or "00000000000",
                      last_name=last_name or "Client", first_name=first_name or ""),
                amount=tx.amount, reference=tx.reference,
                description=f"Paiement commande {tx.order_id}",
            )
        try:
            self._attach_bill(tx, bill_id)
            tx.payment_method = PaymentMethod.CARD.value
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return {
            "bill_id": bill_id,
            "url": self.gateway.card_redirect_url(bill_id, return_url),
            "transaction": tx,
        }

    # =====================================================================
    # Проверка оплаты (опрос биллинга)
    # =====================================================================
    def verify_payment(self, bill_id: str) -> Dict[str, Any]:
        """
        Идемпотентна по bill_id: повторный опрос оплаченного счёта ничего не
        удваивает: amount_paid считается суммой оплаченных транзакций,
        а склад списывает только переход заказа в confirmed.
        """
        by_bill = select(Transaction.id).where(Transaction.operator_reference == bill_id)
        if self.db.execute(by_bill).first() is None:
            raise TransactionNotFound(f"Транзакция для счёта {bill_id} не найдена",
                                      details={"bill_id": bill_id})

        # GatewayError пробрасываем как есть: локально ещё ничего не трогали
        bill = self.gateway.get_bill(bill_id)

        tx = self._lock(
            select(Transaction).where(Transaction.operator_reference == bill_id).order_by(Transaction.id)
        )
        if tx is None:
            raise TransactionNotFound(f"Транзакция для счёта {bill_id} не найдена",
                                      details={"bill_id": bill_id})

        if not bill.is_paid:
            return self._record_pending(tx, bill)

        current = T(tx.status)
        if current in (T.FAILED, T.REFUNDED):
            tx.needs_review = True
            tx.add_note(f"Биллинг сообщает {bill.state}, а транзакция {current.value}")
            self.db.commit()
            raise InvalidTransition(
                f"Транзакция {tx.reference} уже {current.value}, требуется ручная проверка",
                details={"bill_id": bill_id, "state": bill.state},
            )

        already_paid = current == T.PAID
        try:
            if not already_paid:
                self._check_amount(tx)
            self._confirm(
                tx,
                method=map_payment_system(bill.payment_system_name) if bill.payment_system_name else None,
                provider_txid=bill.ps_transaction_id,
                note=f"Оплата подтверждена биллингом. Состояние: {bill.state}",
                user="payment",
            )
            self.db.commit()
        except AmountMismatch:
            self.db.commit()
            raise
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(tx)
        if not already_paid:
            self._notify_paid(tx)
        order = self.db.get(Order, tx.order_id) if tx.order_id else None
        return {
            "confirmed": True,
            "state": bill.state,
            "message": "Оплата подтверждена",
            "transaction": tx,
            "order": order,
        }

    # =====================================================================
    # helpers
    # =====================================================================
    def _record_pending(self, tx: Transaction, bill) -> Dict[str, Any]:
        if bill.payment_system_name:
            guess = map_payment_system(bill.payment_system_name)
            if guess != tx.payment_method:
                tx.payment_method = guess
                tx.add_note(f"Оплата в ожидании. Платёжная система: {bill.payment_system_name}")
                tx.updated_at = datetime.utcnow()
        self.db.commit()
        return {
            "confirmed": False,
            "state": bill.state,
            "message": "Оплата ожидает подтверждения",
            "transaction": tx,
        }

    def _check_amount(self, tx: Transaction):
        if tx.order_id is None:
            return
        order = self._get_order(tx.order_id)
        try:
            fees.verify_amount(order, tx.payment_purpose, tx.amount)
        except AmountMismatch as e:
            tx.needs_review = True
            tx.add_note(f"Сумма не сходится: {e.details}")
            tx.updated_at = datetime.utcnow()
            log.warning("transaction %s: amount mismatch %s", tx.reference, e.details)
            raise

    def _confirm(self, tx: Transaction, method: Optional[str] = None,
                 provider_txid: Optional[str] = None, note: Optional[str] = None,
                 user: str = "payment"):
        now = datetime.utcnow()
        if tx.status == T.PENDING.value:
            fields = {"status": T.PAID.value, "confirmed_at": now, "updated_at": now}
            if method:
                fields["payment_method"] = method
            if provider_txid:
                fields["provider_transaction_id"] = provider_txid
            if note:
                fields["notes"] = self._append(tx, note)
            self._cas(tx, T.PENDING, T.PAID, **fields)

        if tx.order_id is not None:
            self._sync_order(tx.order_id, tx, user=user)

    def _cas(self, tx: Transaction, current: TransactionStatus, target: TransactionStatus, **fields):
        fields.setdefault("status", target.value)
        fields.setdefault("updated_at", datetime.utcnow())
        res = self.db.execute(
            update(Transaction)
            .where(Transaction.id == tx.id, Transaction.status == current.value)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise InvalidTransition(
                f"Транзакция {tx.reference} изменена параллельно",
                details={"expected": current.value, "target": target.value},
            )
        self.db.refresh(tx)

    def _sync_order(self, order_id: int, tx: Transaction, user: str = "payment"):
        """amount_paid = Σ оплаченных транзакций; подтверждаем заказ, если он ещё pending."""
        paid = self.db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.order_id == order_id, Transaction.status == T.PAID.value)
        ).scalar_one()
        paid = int(paid)

        order = self._get_order(order_id)
        order.amount_paid = paid
        order.updated_at = datetime.utcnow()
        if paid > 0:
            order.payment_status = PaymentStatus.PAID.value
            if not order.payment_method and tx.payment_method:
                order.payment_method = tx.payment_method
        elif tx.status == T.REFUNDED.value:
            order.payment_status = PaymentStatus.REFUNDED.value

        if paid > 0 and order.status == OrderStatus.PENDING.value:
            try:
                self.machine.transition(order_id, OrderStatus.CONFIRMED, user=user,
                                        note=f"Оплата {tx.reference}")
            except InsufficientStock as e:
                # деньги получены, а товара уже нет: заказ остаётся pending
                tx.needs_review = True
                tx.add_note(f"Заказ не подтверждён: {e.message}")
                log.warning("order %s: paid but not confirmed: %s", order.number, e.message)

    def _attach_bill(self, tx: Transaction, bill_id: str):
        if tx.operator_reference and tx.operator_reference != bill_id:
            raise InvalidInput("Референс оператора уже установлен",
                               details={"operator_reference": tx.operator_reference})
        tx.operator_reference = bill_id
        tx.updated_at = datetime.utcnow()

    def _check_availability(self, order: Order):
        unavailable, insufficient = [], []
        for line in order.lines:
            product = self.db.get(Product, line.product_id)
            if product is None or not product.is_sellable:
                unavailable.append({"product_id": line.product_id, "name": line.product_name})
                continue
            available = available_stock(product, line.selected_variant)
            if available < line.quantity:
                insufficient.append({
                    "product_id": line.product_id,
                    "name": line.product_name,
                    "requested": line.quantity,
                    "available": available,
                })
        if unavailable or insufficient:
            raise InvalidInput(
                "Некоторые товары недоступны или закончились",
                details={"unavailable_products": unavailable, "insufficient_quantities": insufficient},
            )

    def _get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Заказ {order_id} не найден")
        return order

    def _lock(self, stmt) -> Optional[Transaction]:
        return self.db.execute(
            stmt.with_for_update().execution_options(populate_existing=True)
        ).scalars().first()

    def _paginate(self, q, page: int, limit: int):
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), 100)
        total = self.db.execute(select(func.count()).select_from(q.subquery())).scalar_one()
        rows = self.db.execute(
            q.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return rows, total

    def _notify_paid(self, tx: Transaction):
        order = self.db.get(Order, tx.order_id) if tx.order_id else None
        self.notifier.notify_payment_confirmed(order, tx)

    @staticmethod
    def _append(tx: Transaction, text: str) -> str:
        return f"{tx.notes}\n{text}" if tx.notes else text

    @staticmethod
    def _describe(order: Optional[Order], purpose: PaymentPurpose) -> str:
        if order is None:
            return purpose.value
        return f"{purpose.value}, заказ {order.number}"
