import base64
import json
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import build_engine
from app.errors import StorageError
from app.main import create_app
from app.payment import SettleResponse, VerifyResponse

PAY_TO = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
PAYER = "0x857b06519E91e3A54538791bDbb0E22373e36b66"
MAX_UPLOAD_SIZE = 1024


class FakeObjectStorage:
    def __init__(self):
        self.puts: List[Tuple[str, bytes, str]] = []
        self.fail = False

    def put(self, data: bytes, content_type: str, key: str) -> str:
        if self.fail:
            raise StorageError()
        self.puts.append((key, data, content_type))
        return f"https://test-bucket.oss.example.com/{key}"


class FakeFacilitator:
    def __init__(self):
        self.verify_result = VerifyResponse(is_valid=True, payer=PAYER)
        self.settle_result = SettleResponse(success=True, transaction="0xabc", network="base-sepolia", payer=PAYER)
        self.verify_error: Optional[Exception] = None
        self.verified = []
        self.settled = []

    async def verify(self, payload, requirements):
        if self.verify_error:
            raise self.verify_error
        self.verified.append((payload, requirements))
        return self.verify_result

    async def settle(self, payload, requirements):
        self.settled.append((payload, requirements))
        return self.settle_result


def encode_payment(network: str = "base-sepolia", scheme: str = "exact", version: int = 1) -> str:
    payload = {
        "x402Version": version,
        "scheme": scheme,
        "network": network,
        "payload": {
            "signature": "0x" + "ab" * 65,
            "authorization": {
                "from": PAYER,
                "to": PAY_TO,
                "value": "100",
                "validAfter": "0",
                "validBefore": "9999999999",
                "nonce": "0x" + "00" * 32,
            },
        },
    }
    return base64.b64encode(json.dumps(payload).encode()).decode()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        FACILITATOR_URL="https://facilitator.example.com",
        ADDRESS=PAY_TO,
        NETWORK="base-sepolia",
        DATABASE_URL="sqlite://",
        MAX_UPLOAD_SIZE=MAX_UPLOAD_SIZE,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield engine
    engine.dispose()


@pytest.fixture
def objects() -> FakeObjectStorage:
    return FakeObjectStorage()


@pytest.fixture
def facilitator() -> FakeFacilitator:
    return FakeFacilitator()


@pytest.fixture
def app(settings, objects, facilitator, engine):
    return create_app(settings, objects=objects, facilitator=facilitator, engine=engine)


@pytest.fixture
def client(app):
    # with 触发 startup，建表
    with TestClient(app) as c:
        yield c


@pytest.fixture
def paid_headers():
    return {"X-PAYMENT": encode_payment()}
