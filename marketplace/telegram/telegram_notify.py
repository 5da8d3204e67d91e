import logging
from datetime import datetime
from typing import Iterable, List, Optional

import requests

from marketplace import config

log = logging.getLogger(__name__)


class TelegramNotifier:
    """Уведомления продавцам в Telegram. Отправка best-effort: ошибки только логируются."""

    def __init__(self, token: str, chat_ids: Iterable[str], timeout: float = 5.0):
        self.token = token
        self.chat_ids: List[str] = list(chat_ids)
        self.timeout = timeout
        self.api_url = f"https://api.telegram.org/bot{self.token}/sendMessage"

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_ids)

    def send(self, message: str) -> int:
        """Отправить сообщение всем чатам; возвращает число успешных отправок"""
        if not self.enabled:
            return 0
        sent = 0
        for chat_id in self.chat_ids:
            try:
                r = requests.post(self.api_url, data={
                    "chat_id": chat_id,
                    "text": message,
                    "parse_mode": "HTML",
                }, timeout=self.timeout)
                r.raise_for_status()
                sent += 1
            except requests.RequestException as e:
                log.warning("telegram: не удалось отправить в %s: %s", chat_id, e)
        return sent

    def format_lines(self, lines) -> str:
        """Форматирование строк заказа"""
        out = []
        for line in lines:
            out.append(f"• {line.product_name} × {line.quantity} шт. = {line.line_total}")
        return "\n".join(out)

    def notify_order_created(self, order):
        date_str = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        msg = [
            f"🆕 <b>Новый заказ {order.number}</b>",
            f"📅 {date_str}",
            f"👤 Клиент: {order.customer_name or '—'}",
            f"📞 Телефон: {order.customer_phone or '—'}",
        ]
        if order.customer_instructions:
            msg.append(f"💬 Комментарий: {order.customer_instructions}")
        msg.append("\n📦 Состав заказа:\n" + self.format_lines(order.lines))
        msg.append(f"\n💰 Итого: {order.total}")
        return self.send("\n".join(msg))

    def notify_order_status_changed(self, order, old_status: Optional[str] = None):
        msg = [
            f"⚡ <b>Заказ {order.number}</b>",
            f"📌 Статус: {old_status + ' → ' if old_status else ''}{order.status}",
        ]
        return self.send("\n".join(msg))

    def notify_payment_confirmed(self, order, transaction):
        msg = [
            f"💳 <b>Оплата по заказу {order.number if order else '—'}</b>",
            f"Транзакция: {transaction.reference}",
            f"Сумма: {transaction.amount} ({transaction.payment_purpose})",
            f"Метод: {transaction.payment_method or '—'}",
        ]
        if order is not None:
            msg.append(f"Оплачено всего: {order.amount_paid} из {order.total}")
        return self.send("\n".join(msg))


# глобальный экземпляр
notifier = TelegramNotifier(
    token=config.TELEGRAM_TOKEN,
    chat_ids=config.TELEGRAM_CHAT_IDS,
)
