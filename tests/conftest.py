import itertools
from datetime import date, timedelta
from decimal import Decimal

import pytest

from circulation_service.analytics import AnalyticsEngine
from circulation_service.app import create_app
from circulation_service.catalog import CatalogStore
from circulation_service.circulation import CirculationEngine
from circulation_service.config import Config
from circulation_service.db import make_engine, make_session_factory
from circulation_service.members import MemberStore

DAY_0 = date(2024, 3, 1)
API_KEY = "test-key"


def day(n):
    return DAY_0 + timedelta(days=n)


class FakeClock:
    def __init__(self, today):
        self.today = today

    def __call__(self):
        return self.today

    def advance(self, days):
        self.today += timedelta(days=days)


class Seeder:
    """Creates books, copies and members through the stores."""

    def __init__(self, Session, config):
        self.Session = Session
        self.config = config
        self._emails = itertools.count(1)

    def book(self, title="Dune", author="Frank Herbert", copies=1, **fields):
        session = self.Session()
        try:
            catalog = CatalogStore(session)
            book = catalog.create_book(dict(title=title, author=author, **fields))
            book_id = book.id
            copy_ids = [catalog.add_copy(book_id).id for _ in range(copies)]
            session.commit()
            return book_id, copy_ids
        finally:
            session.close()

    def member(self, name="Ada Lovelace", **fields):
        fields.setdefault("email", f"member{next(self._emails)}@example.com")
        session = self.Session()
        try:
            member = MemberStore(session, self.config).create_member(dict(name=name, **fields))
            member_id = member.id
            session.commit()
            return member_id
        finally:
            session.close()


@pytest.fixture
def config(tmp_path):
    db_path = tmp_path / "library.db"

    class TestConfig(Config):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_path}"
        SQLALCHEMY_ECHO = False
        SERVICE_API_KEY = API_KEY
        LOAN_PERIOD_DAYS = 14
        MAX_RENEWALS = 3
        DEFAULT_MAX_BOOKS = 3
        DAILY_FINE_RATE = Decimal("0.50")
        LOST_BOOK_FEE = Decimal("25.00")
        FINE_BLOCK_THRESHOLD = None

    return TestConfig


@pytest.fixture
def clock():
    return FakeClock(DAY_0)


@pytest.fixture
def Session(config):
    engine = make_engine(config.SQLALCHEMY_DATABASE_URI)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(Session):
    s = Session()
    yield s
    s.close()


@pytest.fixture
def seed(Session, config):
    return Seeder(Session, config)


@pytest.fixture
def circulation(Session, config, clock):
    return CirculationEngine(Session, config, clock=clock)


@pytest.fixture
def analytics(Session, config, clock):
    return AnalyticsEngine(Session, config, clock=clock)


@pytest.fixture
def app(config, clock):
    app = create_app(config, clock=clock)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth():
    return {"X-API-Key": API_KEY}
