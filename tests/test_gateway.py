# tests/test_gateway.py
import pytest
import requests

from errors import GatewayError
from gateway import FAILED, KEY_INVOICE_ID, PAID, PENDING, PaymentGateway
from orders import reconcile_success


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


def client(response=None, error=None):
    session = FakeSession(response, error)
    return PaymentGateway("https://apitest.myfatoorah.com/", "key-123", timeout=15, session=session), session


def ok(data):
    return FakeResponse(200, {"IsSuccess": True, "Message": "", "Data": data})


CUSTOMER = {"name": "Sara", "phone": "55501234", "email": None}


def create(gw, **overrides):
    kwargs = dict(
        payment_method_id=1, amount=21.0, currency="KWD", customer=CUSTOMER,
        callback_url="http://api/payment-success", error_url="http://api/payment-error", reference="ord-1",
    )
    kwargs.update(overrides)
    return gw.create_invoice(**kwargs)


def test_create_invoice_parses_invoice_and_url():
    gw, session = client(ok({"InvoiceId": 6123, "PaymentURL": "https://pay/6123", "IsDirectPayment": False}))

    invoice = create(gw, address={"Street": "Salem"})

    assert invoice.invoice_id == "6123"
    assert invoice.payment_url == "https://pay/6123"
    call = session.calls[0]
    assert call["url"] == "https://apitest.myfatoorah.com/v2/ExecutePayment"
    assert call["timeout"] == 15
    assert call["headers"]["Authorization"] == "Bearer key-123"
    assert call["json"]["InvoiceValue"] == 21.0
    assert call["json"]["CustomerReference"] == "ord-1"
    assert call["json"]["CustomerMobile"] == "55501234"
    assert call["json"]["CustomerEmail"] == "no-email@example.com"
    assert call["json"]["CustomerAddress"] == {"Street": "Salem"}


def test_non_2xx_surfaces_gateway_validation_message():
    body = {"IsSuccess": False, "Message": "Invalid data",
            "ValidationErrors": [{"Name": "PaymentMethodId", "Error": "Invalid PaymentMethodId"}]}
    gw, _ = client(FakeResponse(400, body))

    with pytest.raises(GatewayError) as exc:
        create(gw)

    assert exc.value.status_code == 400
    assert exc.value.message == "PaymentMethodId: Invalid PaymentMethodId"
    assert exc.value.raw_response == body


def test_is_success_false_is_an_error_even_with_200():
    gw, _ = client(FakeResponse(200, {"IsSuccess": False, "Message": "Amount too small", "Data": None}))
    with pytest.raises(GatewayError) as exc:
        create(gw)
    assert exc.value.status_code == 502
    assert exc.value.message == "Amount too small"


def test_missing_payment_url_is_malformed():
    gw, _ = client(ok({"InvoiceId": 6123}))
    with pytest.raises(GatewayError):
        create(gw)


def test_non_json_body():
    gw, _ = client(FakeResponse(500, None, text="<html>down</html>"))
    with pytest.raises(GatewayError) as exc:
        create(gw)
    assert exc.value.status_code == 500
    assert exc.value.details == "<html>down</html>"


def test_timeout_maps_to_504():
    gw, _ = client(error=requests.Timeout("read timed out"))
    with pytest.raises(GatewayError) as exc:
        create(gw)
    assert exc.value.status_code == 504


def test_connection_error_maps_to_502():
    gw, _ = client(error=requests.ConnectionError("refused"))
    with pytest.raises(GatewayError) as exc:
        create(gw)
    assert exc.value.status_code == 502


@pytest.mark.parametrize("invoice_status,transactions,expected", [
    ("Paid", [], PAID),
    ("Canceled", [], FAILED),
    ("Expired", [], FAILED),
    ("Pending", [], PENDING),
    ("Pending", [{"TransactionStatus": "Failed", "Error": "Insufficient funds", "ErrorCode": "MF002"}], FAILED),
    ("Pending", [{"TransactionStatus": "InProgress"}], PENDING),
])
def test_payment_status_mapping(invoice_status, transactions, expected):
    data = {"InvoiceId": 6123, "InvoiceStatus": invoice_status, "InvoiceTransactions": transactions}
    gw, _ = client(ok(data))

    status = gw.get_payment_status("pay-1")

    assert status.invoice_id == "6123"
    assert status.status == expected
    assert status.raw == data


def test_payment_status_carries_last_transaction_error():
    data = {"InvoiceId": 1, "InvoiceStatus": "Pending", "InvoiceTransactions": [
        {"TransactionStatus": "Failed", "Error": "Old", "ErrorCode": "MF001"},
        {"TransactionStatus": "Failed", "Error": "Insufficient funds", "ErrorCode": "MF002"},
    ]}
    gw, session = client(ok(data))

    status = gw.get_payment_status("6123", KEY_INVOICE_ID)

    assert (status.error, status.error_code) == ("Insufficient funds", "MF002")
    assert session.calls[0]["json"] == {"Key": "6123", "KeyType": "InvoiceId"}


@pytest.mark.parametrize("transactions", [[None], ["Failed"], {"TransactionStatus": "Failed"}])
def test_malformed_transactions_are_a_gateway_error(transactions):
    gw, _ = client(ok({"InvoiceId": 5001, "InvoiceStatus": "Pending", "InvoiceTransactions": transactions}))

    with pytest.raises(GatewayError) as exc:
        gw.get_payment_status("pay-1")

    assert exc.value.message == "Malformed payment gateway response"
    assert exc.value.raw_response["Data"]["InvoiceTransactions"] == transactions


def test_initiate_payment_lists_methods():
    gw, _ = client(ok({"PaymentMethods": [
        {"PaymentMethodId": 1, "PaymentMethodEn": "KNET", "PaymentMethodCode": "kn",
         "ImageUrl": "https://img/kn.png", "ServiceCharge": 0.0, "TotalAmount": 21.0, "CurrencyIso": "KWD"},
    ]}))

    methods = gw.initiate_payment(21.0, "KWD")

    assert methods == [{
        "payment_method_id": 1, "name": "KNET", "code": "kn", "image_url": "https://img/kn.png",
        "service_charge": 0.0, "total_amount": 21.0, "currency": "KWD",
    }]


def test_malformed_status_response_does_not_break_reconciliation(db):
    gw, _ = client(ok({"InvoiceId": 5001, "InvoiceStatus": "Pending", "InvoiceTransactions": [None]}))
    assert reconcile_success(db, gw, "pay-1") is False
