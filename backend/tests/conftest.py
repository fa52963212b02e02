"""
Shared fixtures for the booking engine tests.

Each test gets its own file-backed SQLite database so worker threads in the
concurrency tests can open independent sessions against the same data.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest
from sqlalchemy.orm import Session, sessionmaker

from classbook.database import Base, create_db_engine
from classbook.models import ClassTemplate, ScheduledInstance, UserPackage
from classbook.services.booking_ledger import BookingLedgerService
from classbook.services.class_catalog import ClassCatalogService
from classbook.services.credit_ledger import CreditLedgerService
from classbook.services.waitlist_manager import WaitlistManagerService

from .helpers import RecordingNotifier


@pytest.fixture
def engine(tmp_path):
    db_engine = create_db_engine(f"sqlite+pysqlite:///{tmp_path / 'classbook.db'}")
    Base.metadata.create_all(db_engine)
    yield db_engine
    Base.metadata.drop_all(db_engine)
    db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def credits(db, notifier) -> CreditLedgerService:
    return CreditLedgerService(db, notifier)


@pytest.fixture
def ledger(db, notifier, credits) -> BookingLedgerService:
    return BookingLedgerService(db, notifier, credit_ledger=credits)


@pytest.fixture
def waitlist(ledger) -> WaitlistManagerService:
    return ledger.waitlist


@pytest.fixture
def catalog(db, notifier) -> ClassCatalogService:
    return ClassCatalogService(db, notifier)


@pytest.fixture
def template(catalog) -> ClassTemplate:
    return catalog.create_template(
        "Reformer Basics", difficulty="beginner", default_duration_minutes=60, default_capacity=10
    )


@pytest.fixture
def make_instance(catalog, template) -> Callable[..., ScheduledInstance]:
    def _make(
        capacity: int = 2,
        starts_in: timedelta = timedelta(days=2),
        duration_minutes: int = 60,
        instructor_id: str = "instructor-1",
        template_id: Optional[str] = None,
    ) -> ScheduledInstance:
        return catalog.schedule_instance(
            template_id or template.id,
            instructor_id,
            datetime.now(timezone.utc) + starts_in,
            duration_minutes=duration_minutes,
            capacity=capacity,
        )

    return _make


@pytest.fixture
def grant(credits) -> Callable[..., UserPackage]:
    def _grant(user_id: str, amount: int = 5, validity_days: int = 30, **kwargs: Any) -> UserPackage:
        return credits.grant_package(user_id, amount, validity_days, **kwargs)

    return _grant
