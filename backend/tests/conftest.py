"""
Shared fixtures: a file-backed SQLite ledger per test, provider adapters
talking to scripted endpoints over httpx.MockTransport, and fake storage
and chat gateways injected through FastAPI dependency overrides.
"""
import itertools
import sqlite3

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.config import Settings
from storefront.db.init_db import create_tables
from storefront.db.models import Base, ProductModel, UserRoleModel
from storefront.providers.chat_bot import ChatBotAdapter
from storefront.providers.daraja import DarajaAdapter
from storefront.providers.payhero import PayheroAdapter
from storefront.providers.pesapal import PesapalAdapter
from storefront.providers.registry import ProviderRegistry

from helpers import ADMIN_ID, FakeChatGateway, FakeStorage, ProviderStub


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
async def engine(request, tmp_path):
    """
    File database: concurrent sessions need real SQLite locking.

    Built from the ORM metadata by default; parametrize indirectly with
    "ddl" to get the schema that initialize_database applies in production.
    """
    path = tmp_path / "ledger.db"
    schema = getattr(request, "param", "orm")
    if schema == "ddl":
        conn = sqlite3.connect(path)
        try:
            create_tables(conn)
        finally:
            conn.close()

    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", connect_args={"timeout": 30})
    if schema == "orm":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def products(session_factory):
    """Catalog: A (500), B (1200), NOFILE (300, no artifact); ADMIN_ID is an admin."""
    rows = [
        ProductModel(id="A", title="Side Hustle Guide", description="Start earning online.",
                     category="guides", price=500.0, price_usd=3.87, pdf_url="products-pdfs/a.pdf"),
        ProductModel(id="B", title="Budgeting 101", description="Money basics.",
                     category="finance", price=1200.0, pdf_url="b.pdf"),
        ProductModel(id="NOFILE", title="Coming Soon", description="Not uploaded yet.",
                     category="guides", price=300.0, pdf_url=None),
    ]
    async with session_factory() as session:
        session.add_all(rows)
        session.add(UserRoleModel(user_id=ADMIN_ID, role="admin"))
        await session.commit()
    return {p.id: p for p in rows}


# ============================================================================
# Providers
# ============================================================================

@pytest.fixture
def provider_settings():
    return Settings(
        public_base_url="https://shop.example.com",
        mpesa_consumer_key="mpesa-key",
        mpesa_consumer_secret="mpesa-secret",
        mpesa_shortcode="174379",
        mpesa_passkey="passkey",
        pesapal_consumer_key="pesapal-key",
        pesapal_consumer_secret="pesapal-secret",
        pesapal_ipn_id="ipn-123",
        payhero_api_username="payhero-user",
        payhero_api_password="payhero-pass",
        payhero_channel_id="911",
        telegram_bot_token="bot-token",
    )


@pytest.fixture
def daraja_stub():
    stub = ProviderStub()
    counter = itertools.count(1)

    def stk_push(request):
        return httpx.Response(200, json={
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": f"ws_CO_{next(counter):06d}",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        })

    stub.add("GET", "/oauth/v1/generate", {"access_token": "daraja-token", "expires_in": "3599"})
    stub.add("POST", "/mpesa/stkpush/v1/processrequest", handler=stk_push)
    return stub


@pytest.fixture
def pesapal_stub():
    stub = ProviderStub()
    counter = itertools.count(1)

    def submit_order(request):
        n = next(counter)
        return httpx.Response(200, json={
            "order_tracking_id": f"trk-{n}",
            "merchant_reference": "echo",
            "redirect_url": f"https://pay.example.com/iframe?OrderTrackingId=trk-{n}",
            "error": None,
            "status": "200",
        })

    stub.add("POST", "/api/Auth/RequestToken", {"token": "pesapal-token", "status": "200"})
    stub.add("POST", "/api/Transactions/SubmitOrderRequest", handler=submit_order)
    stub.add("GET", "/api/Transactions/GetTransactionStatus", {
        "payment_method": "MpesaKE",
        "amount": 500.0,
        "payment_status_description": "Completed",
        "status_code": 1,
        "merchant_reference": None,
        "currency": "KES",
    })
    return stub


@pytest.fixture
def payhero_stub():
    stub = ProviderStub()
    counter = itertools.count(1)

    def push(request):
        n = next(counter)
        return httpx.Response(201, json={
            "success": True,
            "status": "QUEUED",
            "reference": f"PH-{n}",
            "CheckoutRequestID": f"ws_CO_ph{n:04d}",
        })

    stub.add("POST", "/api/v2/payments", handler=push)
    stub.add("GET", "/api/v2/transaction-status", {
        "status": "SUCCESS",
        "provider_reference": "SAE3YULR0Y",
        "reference": "PH-1",
    })
    return stub


@pytest.fixture
async def daraja_adapter(daraja_stub, provider_settings):
    client = httpx.AsyncClient(transport=daraja_stub.transport(), base_url=provider_settings.mpesa_base_url)
    yield DarajaAdapter(client=client, config=provider_settings)
    await client.aclose()


@pytest.fixture
async def chat_adapter(daraja_stub, provider_settings):
    client = httpx.AsyncClient(transport=daraja_stub.transport(), base_url=provider_settings.mpesa_base_url)
    yield ChatBotAdapter(client=client, config=provider_settings)
    await client.aclose()


@pytest.fixture
async def pesapal_adapter(pesapal_stub, provider_settings):
    client = httpx.AsyncClient(transport=pesapal_stub.transport(), base_url=provider_settings.pesapal_base_url)
    yield PesapalAdapter(client=client, config=provider_settings)
    await client.aclose()


@pytest.fixture
async def payhero_adapter(payhero_stub, provider_settings):
    client = httpx.AsyncClient(transport=payhero_stub.transport(), base_url=provider_settings.payhero_base_url)
    yield PayheroAdapter(client=client, config=provider_settings)
    await client.aclose()


@pytest.fixture
def registry(daraja_adapter, pesapal_adapter, payhero_adapter, chat_adapter):
    return ProviderRegistry([daraja_adapter, pesapal_adapter, payhero_adapter, chat_adapter])


@pytest.fixture
def unconfigured_registry():
    blank = Settings(
        mpesa_consumer_key="", mpesa_consumer_secret="", mpesa_shortcode="", mpesa_passkey="",
        pesapal_consumer_key="", pesapal_consumer_secret="",
    )
    return ProviderRegistry([
        DarajaAdapter(config=blank), PesapalAdapter(config=blank),
        PayheroAdapter(config=blank), ChatBotAdapter(config=blank),
    ])


# ============================================================================
# Storage and chat fakes
# ============================================================================

@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def gateway():
    return FakeChatGateway()


# ============================================================================
# API client
# ============================================================================

@pytest.fixture
async def client(session_factory, registry, storage, gateway):
    from storefront.db.init_db import get_db
    from storefront.main import app
    from storefront.providers.registry import get_provider_registry
    from storefront.services.chat_gateway import get_chat_gateway
    from storefront.services.storage import get_storage

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_provider_registry] = lambda: registry
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_chat_gateway] = lambda: gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c

    app.dependency_overrides.clear()
