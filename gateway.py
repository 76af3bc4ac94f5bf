"""
MyFatoorah payment gateway client

Thin wrapper over the v2 REST API. Every call is a single attempt with a
bounded timeout; any transport problem, non-2xx status, IsSuccess=false or
malformed body surfaces as GatewayError.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from errors import GatewayError

logger = logging.getLogger(__name__)

PAID = "paid"
FAILED = "failed"
PENDING = "pending"

KEY_PAYMENT_ID = "PaymentId"
KEY_INVOICE_ID = "InvoiceId"

_FAILED_INVOICE_STATUSES = {"canceled", "cancelled", "failed", "expired"}


@dataclass
class Invoice:
    invoice_id: str
    payment_url: str
    raw: Dict[str, Any]


@dataclass
class PaymentStatus:
    invoice_id: str
    status: str
    error: Optional[str]
    error_code: Optional[str]
    raw: Dict[str, Any]


def _gateway_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    errors = body.get("ValidationErrors") or []
    if errors:
        return "; ".join(f"{e.get('Name')}: {e.get('Error')}" for e in errors if isinstance(e, dict))
    return body.get("Message") or None


class PaymentGateway:
    def __init__(self, base_url: str, api_key: str, timeout: float = 15, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            r = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            logger.error("Gateway timeout on %s after %ss", path, self.timeout)
            raise GatewayError("Payment gateway timed out", status_code=504) from e
        except requests.RequestException as e:
            logger.error("Gateway request to %s failed: %s", path, e)
            raise GatewayError("Payment gateway unavailable") from e

        try:
            body = r.json()
        except ValueError:
            body = None

        if r.status_code >= 300:
            raise GatewayError(_gateway_message(body) or f"Payment gateway returned {r.status_code}",
                               status_code=r.status_code, details=body if body is not None else r.text)
        if not isinstance(body, dict) or not body.get("IsSuccess") or not isinstance(body.get("Data"), dict):
            raise GatewayError(_gateway_message(body) or "Malformed payment gateway response", details=body)
        return body

    def initiate_payment(self, amount: float, currency: str) -> List[Dict[str, Any]]:
        """Available payment methods for an amount."""
        body = self._post("/v2/InitiatePayment", {"InvoiceAmount": amount, "CurrencyIso": currency})
        methods = body["Data"].get("PaymentMethods") or []
        return [
            {
                "payment_method_id": m.get("PaymentMethodId"),
                "name": m.get("PaymentMethodEn"),
                "code": m.get("PaymentMethodCode"),
                "image_url": m.get("ImageUrl"),
                "service_charge": m.get("ServiceCharge"),
                "total_amount": m.get("TotalAmount"),
                "currency": m.get("CurrencyIso"),
            }
            for m in methods
        ]

    def create_invoice(self, payment_method_id: int, amount: float, currency: str, customer: Dict[str, Any],
                       callback_url: str, error_url: str, reference: str,
                       address: Optional[Dict[str, Any]] = None, mobile_country_code: str = "+965") -> Invoice:
        payload = {
            "PaymentMethodId": str(payment_method_id),
            "InvoiceValue": amount,
            "DisplayCurrencyIso": currency,
            "CustomerName": customer.get("name"),
            "MobileCountryCode": mobile_country_code,
            "CustomerMobile": str(customer.get("phone") or ""),
            "CustomerEmail": customer.get("email") or "no-email@example.com",
            "CallBackUrl": callback_url,
            "ErrorUrl": error_url,
            "Language": "en",
            "CustomerReference": reference,
        }
        if address:
            payload["CustomerAddress"] = address
        body = self._post("/v2/ExecutePayment", payload)
        data = body["Data"]
        if not data.get("InvoiceId") or not data.get("PaymentURL"):
            raise GatewayError("Malformed payment gateway response", details=body)
        return Invoice(invoice_id=str(data["InvoiceId"]), payment_url=data["PaymentURL"], raw=body)

    def get_payment_status(self, key: str, key_type: str = KEY_PAYMENT_ID) -> PaymentStatus:
        body = self._post("/v2/GetPaymentStatus", {"Key": key, "KeyType": key_type})
        data = body["Data"]
        if not data.get("InvoiceId"):
            raise GatewayError("Malformed payment gateway response", details=body)

        invoice_status = str(data.get("InvoiceStatus") or "").lower()
        if invoice_status == "paid":
            status = PAID
        elif invoice_status in _FAILED_INVOICE_STATUSES:
            status = FAILED
        else:
            status = PENDING

        transactions = data.get("InvoiceTransactions") or []
        if not isinstance(transactions, list) or not all(isinstance(t, dict) for t in transactions):
            raise GatewayError("Malformed payment gateway response", details=body)
        last = transactions[-1] if transactions else {}
        if status == PENDING and str(last.get("TransactionStatus") or "").lower() == "failed":
            status = FAILED
        return PaymentStatus(
            invoice_id=str(data["InvoiceId"]),
            status=status,
            error=last.get("Error"),
            error_code=last.get("ErrorCode"),
            raw=data,
        )
