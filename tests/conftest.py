"""Shared pytest fixtures for Promptly Printed tests."""

import json
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from promptly.api.main import create_app
from promptly.core.competitions import CompetitionService
from promptly.core.config import PromptlyConfig
from promptly.core.credit_purchases import CreditPurchaseService
from promptly.core.credits import CreditLedger
from promptly.core.database import Database
from promptly.core.orders import Address, OrderActionService
from promptly.core.points import PointsLedger
from promptly.core.rewards import RewardsService
from promptly.integrations.prodigi import ProdigiClient
from promptly.integrations.square import SquareClient

START = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeProdigiAPI:
    """In-memory stand-in for the Prodigi REST API, served via MockTransport.

    ``actions`` is returned from the actions endpoint; ``fail`` maps a path
    suffix to the status code that request should fail with.
    """

    def __init__(self):
        self.actions = {
            "cancel": {"isAvailable": "Yes"},
            "changeRecipientDetails": {"isAvailable": "Yes"},
            "changeShippingMethod": {"isAvailable": "Yes"},
            "changeMetaData": {"isAvailable": "Yes"},
        }
        self.fail: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def calls(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, status in self.fail.items():
            if request.url.path.endswith(suffix):
                return httpx.Response(status, json={"outcome": "Failed"})

        if request.url.path.endswith("/actions") and request.method == "GET":
            return httpx.Response(200, json={"outcome": "Ok", "actions": self.actions})
        if request.url.path.endswith("/orders") and request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(
                200, json={"outcome": "Created", "order": {"id": "ord_900001", **body}}
            )
        if request.url.path.endswith("/quotes"):
            return httpx.Response(200, json={"outcome": "Created", "quotes": []})
        return httpx.Response(200, json={"outcome": "Ok"})


class FakeSquareAPI:
    """In-memory stand-in for Square's refunds and payment-link endpoints."""

    def __init__(self):
        self.status_code = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(
                self.status_code,
                json={"errors": [{"code": "REFUND_DECLINED", "detail": "Refund declined"}]},
            )
        body = json.loads(request.content)
        n = len(self.requests)
        if request.url.path == "/v2/online-checkout/payment-links":
            return httpx.Response(
                200,
                json={
                    "payment_link": {
                        "id": f"pl_{n}",
                        "url": f"https://square.link/u/pl_{n}",
                        "order_id": f"sq_order_{n}",
                    }
                },
            )
        return httpx.Response(
            200,
            json={
                "refund": {
                    "id": f"rf_{n}",
                    "status": "PENDING",
                    "amount_money": body["amount_money"],
                }
            },
        )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PromptlyConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PromptlyConfig instance for testing
    """
    return PromptlyConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        database_path=temp_dir / "data" / "test.db",
        prodigi_api_key="test-prodigi-key",
        prodigi_api_url="https://prodigi.test/v4.0",
        square_access_token="test-square-token",
        square_api_url="https://square.test",
        square_location_id="LOC_TEST",
        square_webhook_signature_key="test-webhook-key",
        square_webhook_url="https://promptly.test/api/webhooks/square/credits",
        public_base_url="https://promptly.test",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(test_config: PromptlyConfig) -> Database:
    return Database(test_config.database_path)


@pytest.fixture
def ledger(db: Database, clock: FakeClock) -> PointsLedger:
    return PointsLedger(db, points_per_level=500, now=clock)


@pytest.fixture
def competitions(db: Database, ledger: PointsLedger, clock: FakeClock) -> CompetitionService:
    return CompetitionService(db, ledger, now=clock)


@pytest.fixture
def open_competition(competitions: CompetitionService, clock: FakeClock):
    """A competition that opened yesterday and closes in a week."""
    return competitions.create_competition(
        "Spooky Season",
        clock() - timedelta(days=1),
        clock() + timedelta(days=7),
        theme_icon="🎃",
        prize="$100 store credit",
        funnel_tag="halloween",
        competition_id="comp_1",
    )


@pytest.fixture
def rewards(db: Database, ledger: PointsLedger, clock: FakeClock) -> RewardsService:
    return RewardsService(db, ledger, now=clock)


@pytest.fixture
def credits(db: Database, clock: FakeClock) -> CreditLedger:
    return CreditLedger(db, now=clock)


@pytest.fixture
def prodigi_api() -> FakeProdigiAPI:
    return FakeProdigiAPI()


@pytest.fixture
def square_api() -> FakeSquareAPI:
    return FakeSquareAPI()


@pytest.fixture
def prodigi_client(prodigi_api: FakeProdigiAPI) -> Generator[ProdigiClient, None, None]:
    client = ProdigiClient(
        "test-prodigi-key",
        "https://prodigi.test/v4.0",
        callback_url="https://promptly.test/api/webhooks/prodigi",
        transport=httpx.MockTransport(prodigi_api),
    )
    yield client
    client.close()


@pytest.fixture
def refunds(square_api: FakeSquareAPI) -> Generator[SquareClient, None, None]:
    client = SquareClient(
        "test-square-token",
        "https://square.test",
        transport=httpx.MockTransport(square_api),
    )
    yield client
    client.close()


@pytest.fixture
def purchases(
    db: Database, credits: CreditLedger, refunds: SquareClient, clock: FakeClock
) -> CreditPurchaseService:
    service = CreditPurchaseService(
        db,
        credits,
        refunds,
        location_id="LOC_TEST",
        public_base_url="https://promptly.test",
        now=clock,
    )
    service.seed_default_packs()
    return service


@pytest.fixture
def orders(
    db: Database,
    prodigi_client: ProdigiClient,
    refunds: SquareClient,
    clock: FakeClock,
) -> OrderActionService:
    return OrderActionService(db, prodigi_client, refunds, now=clock)


@pytest.fixture
def address() -> Address:
    return Address(
        name="Ada Lovelace",
        address_line1="12 Analytical Row",
        city="London",
        postal_code="N1 9GU",
        country_code="GB",
        email="ada@example.com",
    )


@pytest.fixture
def test_client(
    test_config: PromptlyConfig,
    prodigi_api: FakeProdigiAPI,
    square_api: FakeSquareAPI,
    clock: FakeClock,
) -> Generator[TestClient, None, None]:
    """TestClient over an app wired to the fake Prodigi and Square APIs."""
    app = create_app(
        test_config,
        prodigi_transport=httpx.MockTransport(prodigi_api),
        square_transport=httpx.MockTransport(square_api),
        now=clock,
    )
    with TestClient(app) as client:
        yield client
