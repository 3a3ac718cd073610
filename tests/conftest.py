"""
Global pytest configuration
"""

import time
from datetime import datetime
from itertools import count
from typing import Any, Dict, List, Optional

import pytest
from fakeredis import FakeRedis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.models import Base
from database.repos import CredentialRepository, ProductRepository
from services.container import build_container, reset_container, set_container
from services.gateway.qris_client import Charge, ChargeStatus, normalize_status
from services.orders.exceptions import PaymentGatewayError
from services.stock import encrypt_rows


class FakeGateway:
    """QRIS gateway double; amount_to_charge adds a fixed uniquifier"""

    def __init__(self, uniquifier: int = 127) -> None:
        self.uniquifier = uniquifier
        self.charges: List[Dict[str, Any]] = []
        self.statuses: Dict[str, str] = {}
        self.fail_create = False
        self.fail_status = False
        self._ids = count(1)

    async def create_charge(self, order_ref: str, amount: int, customer_ref: Optional[str] = None) -> Charge:
        if self.fail_create:
            raise PaymentGatewayError("gateway down")
        charge = Charge(
            charge_id=f"TX{next(self._ids):05d}",
            amount=int(amount),
            amount_to_charge=int(amount) + self.uniquifier,
            qr_payload=f"00020101021226{order_ref}",
        )
        self.charges.append({"ref": order_ref, "amount": amount, "charge": charge})
        return charge

    def get_charge_status_sync(self, charge_id: str) -> ChargeStatus:
        if self.fail_status:
            raise PaymentGatewayError("timeout")
        status = normalize_status(self.statuses.get(charge_id))
        return ChargeStatus(
            charge_id=charge_id,
            status=status,
            paid_at=datetime.utcnow() if status == "paid" else None,
        )


class FakeNotifier:
    """Records everything the services try to send"""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []
        self.photos: List[Dict[str, Any]] = []
        self.deliveries: List[Dict[str, Any]] = []
        self.deleted: List[tuple] = []
        self.alerts: List[str] = []
        self.channel_posts: List[tuple] = []
        self.deliver_ok = True
        self._ids = count(1000)

    async def send_message(self, chat_id, text, parse_mode=None, reply_markup=None):
        self.messages.append({"chat_id": chat_id, "text": text, "parse_mode": parse_mode})
        return next(self._ids)

    async def send_photo(self, chat_id, photo, caption=None, parse_mode=None, reply_markup=None):
        self.photos.append({"chat_id": chat_id, "caption": caption, "reply_markup": reply_markup})
        return next(self._ids)

    async def deliver_credentials(self, chat_id, text, file_name=None, file_content=None, parse_mode="MarkdownV2"):
        self.deliveries.append(
            {"chat_id": chat_id, "text": text, "file_name": file_name, "file_content": file_content}
        )
        return self.deliver_ok

    async def delete_message(self, chat_id, message_id):
        if not chat_id or not message_id:
            return False
        self.deleted.append((chat_id, message_id))
        return True

    async def send_admin_alert(self, text, parse_mode=None):
        self.alerts.append(text)
        return 1

    async def post_channel(self, channel_id, text, parse_mode=None):
        if not channel_id:
            return False
        self.channel_posts.append((channel_id, text))
        return True


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite shared by every session of a test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(db_engine, monkeypatch):
    """Points every repository at the test engine"""
    factory = sessionmaker(bind=db_engine, expire_on_commit=False)
    monkeypatch.setattr("database.repos.SessionLocal", factory)
    monkeypatch.setattr("database.balance_repos.SessionLocal", factory)
    return factory


@pytest.fixture(scope="function")
def fake_redis(monkeypatch):
    """FakeRedis in place of every module-level redis_client"""
    redis = FakeRedis(decode_responses=True)
    for target in (
        "core.redis_client.redis_client",
        "core.rate_limiter.redis_client",
        "core.locks.redis_client",
        "services.session_state.redis_client",
    ):
        monkeypatch.setattr(target, redis)
    yield redis
    redis.flushall()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def container(db, fake_redis, gateway, notifier):
    """Wired services over the fakes, installed as the process container"""
    built = build_container(gateway=gateway, notifier=notifier)
    set_container(built)
    yield built
    reset_container()


@pytest.fixture
def make_product(db):
    """Creates a product with ``stock`` unsold credentials"""

    def _make(name: str = "Netflix 1 Bulan", price: int = 25_000, stock: int = 5, **kwargs):
        product = ProductRepository.create_sync(name=name, price=price, **kwargs)
        rows = [
            {
                "email": f"user{i}@{name.split()[0].lower()}.test",
                "password": f"pass{i}",
                "pin": str(1000 + i),
                "extra_info": None,
            }
            for i in range(stock)
        ]
        if rows:
            CredentialRepository.add_bulk_sync(product.id, encrypt_rows(rows))
        return product

    return _make


@pytest.fixture
def telegram_update():
    """Basic Telegram text update"""
    return {
        "update_id": 123456789,
        "message": {
            "message_id": 1,
            "from": {
                "id": 987654321,
                "is_bot": False,
                "first_name": "Test",
                "username": "testuser",
            },
            "chat": {"id": 987654321, "type": "private"},
            "date": int(time.time()) + 60,
            "text": "/start",
        },
    }


@pytest.fixture
def telegram_callback_query():
    """Telegram callback query update"""
    return {
        "update_id": 123456790,
        "callback_query": {
            "id": "cbq-1",
            "from": {"id": 987654321, "is_bot": False, "first_name": "Test", "username": "testuser"},
            "message": {
                "message_id": 10,
                "chat": {"id": 987654321, "type": "private"},
                "date": int(time.time()),
            },
            "data": "menu:products",
        },
    }
