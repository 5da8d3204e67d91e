# marketplace/services/billing.py
import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import requests

from marketplace import config
from marketplace.errors import GatewayError

log = logging.getLogger(__name__)

PAID_STATES = ("paid", "processed")

# имя системы в e-billing -> наш метод оплаты
_METHOD_BY_SYSTEM = {
    "airtelmoney": "airtel_money",
    "moovmoney": "moov_money",
    "moovmoney1": "moov_money",
}


def map_payment_system(name: Optional[str]) -> str:
    return _METHOD_BY_SYSTEM.get((name or "").strip().lower(), "mobile_money")


def ussd_system_name(payment_system: str) -> str:
    # e-billing ждёт moovmoney1 вместо moovmoney
    return "moovmoney1" if payment_system == "moovmoney" else payment_system


@dataclass
class BillState:
    bill_id: str
    state: Optional[str]
    ps_transaction_id: Optional[str] = None
    payment_system_name: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return (self.state or "").lower() in PAID_STATES


@dataclass
class Payer:
    email: Optional[str] = None
    msisdn: Optional[str] = None
    last_name: Optional[str] = None
    first_name: Optional[str] = None


class BillingGateway:
    """
    Клиент e-billing: авторизация, счёт, USSD-пуш, статус счёта.
    Токен не кэшируется, каждая операция получает свой.
    """

    def __init__(self, auth_url: str, invoice_url: str, ussd_url: str, bills_url: str,
                 api_id: str, api_secret: str, username: str, shared_key: str,
                 timeout: float = 15.0, max_retries: int = 3, backoff: float = 0.5,
                 card_portal_url: str = "", card_operator: str = "ORABANK_NG",
                 session: Optional[requests.Session] = None):
        self.auth_url = auth_url
        self.invoice_url = invoice_url
        self.ussd_url = ussd_url
        self.bills_url = bills_url.rstrip("/")
        self.api_id = api_id
        self.api_secret = api_secret
        self.username = username
        self.shared_key = shared_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.card_portal_url = card_portal_url.rstrip("/")
        self.card_operator = card_operator
        self.http = session or requests.Session()

    @classmethod
    def from_config(cls) -> "BillingGateway":
        return cls(
            auth_url=config.BILLING_AUTH_URL,
            invoice_url=config.BILLING_INVOICE_URL,
            ussd_url=config.BILLING_USSD_URL,
            bills_url=config.BILLING_BILLS_URL,
            api_id=config.BILLING_API_ID,
            api_secret=config.BILLING_API_SECRET,
            username=config.BILLING_USERNAME,
            shared_key=config.BILLING_SHARED_KEY,
            timeout=config.BILLING_TIMEOUT,
            max_retries=config.BILLING_MAX_RETRIES,
            backoff=config.BILLING_RETRY_BACKOFF,
            card_portal_url=config.CARD_PORTAL_URL,
            card_operator=config.CARD_OPERATOR,
        )

    # ---------- API ----------
    def authenticate(self) -> str:
        resp = self._call("POST", self.auth_url, what="auth",
                          data={"api_id": self.api_id, "api_secret": self.api_secret})
        token = (resp or {}).get("access_token")
        if not token:
            raise GatewayError("Биллинг не вернул access_token")
        return token

    def create_invoice(self, payer: Payer, amount: int, reference: str,
                       description: Optional[str] = None, token: Optional[str] = None) -> str:
        token = token or self.authenticate()
        payload = {
            "payer_email": payer.email,
            "payer_msisdn": payer.msisdn,
            "amount": int(amount),
            "short_description": description or reference,
            "label": reference,
            "payer_last_name": payer.last_name,
            "payer_first_name": payer.first_name or "",
        }
        data = self._call("POST", self.invoice_url, what="create-invoice",
                          json=payload, headers={"Authorization": f"Bearer {token}"})
        try:
            bill_id = data["response"]["e_bills"][0]["bill_id"]
        except (KeyError, IndexError, TypeError):
            raise GatewayError("Некорректный ответ биллинга при создании счёта", details={"response": data})
        log.info("billing: invoice %s created for %s (%s)", bill_id, reference, amount)
        return str(bill_id)

    def push_ussd(self, bill_id: str, msisdn: str, payment_system: str,
                  token: Optional[str] = None) -> dict:
        token = token or self.authenticate()
        payload = {
            "bill_id": bill_id,
            "payment_system_name": ussd_system_name(payment_system),
            "payer_msisdn": msisdn,
        }
        return self._call("POST", self.ussd_url, what="send-ussd-push",
                          json=payload, headers={"Authorization": f"Bearer {token}"})

    def get_bill(self, bill_id: str) -> BillState:
        data = self._call(
            "GET", f"{self.bills_url}/{quote(str(bill_id), safe='')}", what="e_bills",
            auth=(self.username, self.shared_key), headers={"Accept": "*/*"},
            retry=True,
        )
        data = data or {}
        return BillState(
            bill_id=str(bill_id),
            state=data.get("state"),
            ps_transaction_id=data.get("ps_transaction_id"),
            payment_system_name=data.get("payment_system_name"),
        )

    def card_redirect_url(self, bill_id: str, return_url: str) -> str:
        return (f"{self.card_portal_url}/?invoice={bill_id}&operator={self.card_operator}"
                f"&redirect=1&redirect_url={return_url}?bill_id={bill_id}")

    # ---------- transport ----------
    def _call(self, method: str, url: str, what: str, retry: bool = False, **kwargs) -> dict:
        attempts = self.max_retries if retry else 1
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                r = self.http.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                last_error = f"{type(e).__name__}: {e}"
                log.warning("billing %s failed (attempt %s/%s): %s", what, attempt, attempts, last_error)
            else:
                if r.status_code < 500 or attempt == attempts:
                    if r.status_code >= 400:
                        raise GatewayError(
                            f"Биллинг вернул {r.status_code} на {what}",
                            details={"status": r.status_code, "body": r.text[:500]},
                        )
                    try:
                        return r.json()
                    except ValueError:
                        raise GatewayError(f"Биллинг вернул не-JSON на {what}")
                last_error = f"HTTP {r.status_code}"
                log.warning("billing %s: %s (attempt %s/%s)", what, last_error, attempt, attempts)
            if attempt < attempts:
                time.sleep(self.backoff * attempt)
        raise GatewayError(f"Биллинг недоступен ({what}): {last_error}")
