import pytest

from orderflow.gateway import MockGateway
from orderflow.helpers import now_ts, new_id
from orderflow.infra import timings
from orderflow.infra.sql import open_database
from orderflow.model import orders, stock
from orderflow.model.orm import (
    ProviderAccount, WebhookSubscriber, SystemSetting, create_schema,
)
from orderflow.settings import SettingsSnapshot


@pytest.fixture
async def database(tmp_path):
    database = open_database(f"sqlite:///{tmp_path / 'orderflow.db'}")
    async with database.engine.begin() as conn:
        await create_schema(conn)
    yield database
    await database.dispose()


@pytest.fixture
async def db(database):
    async with database.session() as session:
        yield session


@pytest.fixture(autouse=True)
def _reset_timings():
    timings.reset()
    yield


@pytest.fixture
def gateway():
    return MockGateway("test-secret")


@pytest.fixture
def settings():
    return SettingsSnapshot()


@pytest.fixture
def make_product(db):
    async def _make(*, name="Netflix Premium 1 Month", price=50_000,
                    reseller_price=None, product_type="STOCK",
                    provider_slug=None, units=0):
        product_id = await stock.create_product(
            db, name=name, retail_price=price, reseller_price=reseller_price,
            product_type=product_type, provider_slug=provider_slug,
        )
        if units:
            await stock.add_stock(
                db, product_id, [f"{name} login #{i}" for i in range(units)]
            )
        return product_id
    return _make


@pytest.fixture
def make_order(db):
    async def _make(product_id, quantity=1, **kw):
        input_data = kw.pop("input_data", None)
        kw.setdefault("customer_email", "buyer@example.com")
        kw.setdefault("customer_name", "Budi")
        return await orders.create_order(
            db,
            items=[{"product_id": product_id, "quantity": quantity,
                    "input_data": input_data}],
            **kw,
        )
    return _make


@pytest.fixture
def add_row(db):
    async def _add(obj):
        async with db.gated():
            async with db.session.begin():
                db.session.add(obj)
        return obj
    return _add


@pytest.fixture
def add_provider_account(add_row):
    async def _add(slug="chatgpt", *, max_invites=5, invites_used=0,
                   credentials=None, name="team-1"):
        return await add_row(ProviderAccount(
            id=new_id(),
            provider_slug=slug,
            name=name,
            credentials=credentials or {"account_id": "acc-1",
                                        "token": "tok"},
            max_invites=max_invites,
            invites_used=invites_used,
            is_active=True,
        ))
    return _add


@pytest.fixture
def add_subscriber(add_row):
    async def _add(reseller_id, url="https://reseller.example/hook",
                   secret="whsec"):
        return await add_row(WebhookSubscriber(
            id=new_id(),
            reseller_id=reseller_id,
            webhook_url=url,
            webhook_secret=secret,
            is_active=True,
            webhook_enabled=True,
            created_at=now_ts(),
        ))
    return _add


@pytest.fixture
def add_setting(add_row):
    async def _add(key, value):
        return await add_row(SystemSetting(key=key, value=value,
                                           updated_at=now_ts()))
    return _add
