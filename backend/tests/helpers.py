"""
Test doubles and payload builders shared by the test modules.
"""
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from storefront.services.identity import issue_token

BUYER_ID = "8d1c5a1e-6f0b-4b8e-9a57-3f7f0c2d9e11"
OTHER_ID = "5b0e3c9d-1a2f-4e6b-8c7d-9f0a1b2c3d4e"
ADMIN_ID = "a0a0a0a0-0000-4000-8000-000000000001"


def auth_headers(user_id: str = BUYER_ID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id)}"}


class ProviderStub:
    """Scripted provider endpoints served through httpx.MockTransport."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def add(
        self,
        method: str,
        path_suffix: str,
        body: Optional[Dict[str, Any]] = None,
        status_code: int = 200,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None
    ) -> None:
        self.routes[(method, path_suffix)] = handler or (
            lambda request: httpx.Response(status_code, json=body)
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, suffix), handler in self.routes.items():
            if request.method == method and request.url.path.endswith(suffix):
                return handler(request)
        return httpx.Response(404, json={"errorMessage": f"No route for {request.url.path}"})

    def calls(self, path_suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class FakeStorage:
    def __init__(self):
        self.signed: List[Tuple[str, int]] = []

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        self.signed.append((path, ttl_seconds))
        return f"https://storage.example.com/signed/{path.split('/')[-1]}?expires={ttl_seconds}&sig=abc"


class FakeChatGateway:
    def __init__(self):
        self.messages: List[Tuple[str, str]] = []
        self.documents: List[Tuple[str, str, str]] = []
        self.contact_requests: List[str] = []

    @property
    def is_configured(self) -> bool:
        return True

    async def send_message(self, chat_id, text, reply_markup=None):
        self.messages.append((chat_id, text))
        return {"ok": True}

    async def send_document(self, chat_id, url, caption):
        self.documents.append((chat_id, url, caption))
        return {"ok": True}

    async def request_contact(self, chat_id, text):
        self.contact_requests.append(chat_id)
        return await self.send_message(chat_id, text)

    async def remove_keyboard(self, chat_id, text):
        return await self.send_message(chat_id, text)

    def texts(self, chat_id: str) -> List[str]:
        return [text for cid, text in self.messages if cid == chat_id]


def stk_callback(
    checkout_id: str,
    result_code: int = 0,
    receipt: str = "QKT1ABC2DE",
    amount: float = 500,
    phone: str = "254712345678",
    result_desc: Optional[str] = None
) -> Dict[str, Any]:
    """Daraja stkCallback envelope as posted to our callback URL."""
    callback: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20261017143512},
            {"Name": "PhoneNumber", "Value": int(phone)},
        ]}
    return {"Body": {"stkCallback": callback}}


def telegram_message(chat_id: int, text: Optional[str] = None, contact_phone: Optional[str] = None) -> Dict[str, Any]:
    """Telegram update carrying one message."""
    message: Dict[str, Any] = {
        "message_id": 1,
        "from": {"id": chat_id, "first_name": "Wanjiru"},
        "chat": {"id": chat_id, "type": "private"},
    }
    if text is not None:
        message["text"] = text
    if contact_phone is not None:
        message["contact"] = {"phone_number": contact_phone, "first_name": "Wanjiru", "user_id": chat_id}
    return {"update_id": 1000 + chat_id % 1000, "message": message}
