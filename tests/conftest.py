"""Pytest fixtures for the checkout service."""
import pytest
from fastapi.testclient import TestClient

from checkout_service.config import Settings
from checkout_service.main import create_app
from checkout_service.models import Address, Product

from .support import OTHER_USER, USER, WEBHOOK_SECRET, FakeGateway, RecordingPublisher


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'checkout.db'}",
        stripe_secret_key="sk_test_unused",
        stripe_webhook_secret=WEBHOOK_SECRET,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        log_level="DEBUG",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def app(settings, gateway, publisher):
    return create_app(settings, gateway=gateway, publisher=publisher)


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


@pytest.fixture
def orders(app):
    return app.state.orders


@pytest.fixture
def seeded(session_factory):
    session = session_factory()
    session.add_all([
        Product(id="p1", title="Vintage lamp", price_cents=1999, stock=10),
        Product(id="p2", title="Record player", price_cents=3999, discount_price_cents=2999, stock=5),
        Product(id="p3", title="Signed print", price_cents=500, stock=1),
        Address(id="a1", user_id=USER, name="Ada", street="1 Main St", city="Springfield",
                state="IL", postal_code="62701", country="US"),
        Address(id="a2", user_id=OTHER_USER, name="Bob", street="2 Oak Ave", city="Shelbyville",
                state="IL", postal_code="62565", country="US"),
    ])
    session.commit()
    session.close()
    return session_factory


@pytest.fixture
def client(app, seeded):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()
