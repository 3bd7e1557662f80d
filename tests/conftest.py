"""Pytest fixtures for dues engine tests."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dues_engine.models import Base, Member, Membership, Organization, Payment, Plan
from dues_engine.notifications import RecordingNotificationSink

# In-memory SQLite shared across threads via StaticPool.
# For PostgreSQL-only behavior (advisory locks), use a test Postgres database.
TEST_DATABASE_URL = "sqlite://"

DEFAULT_PRICING = {"monthly": 2000, "biannual": 12000, "annual": 24000}


@pytest.fixture
def engine() -> Iterator[Engine]:
    """Create a fresh test database per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, class_=Session, expire_on_commit=False, autoflush=False)


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Create a database session for each test."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def notifier() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def make_organization(session: Session) -> Callable[..., Organization]:
    """Factory for organizations."""

    def _make(**overrides: Any) -> Organization:
        values: dict[str, Any] = {
            "organization_id": uuid4(),
            "name": "Islamic Center of Fremont",
            "slug": f"org-{uuid4().hex[:8]}",
            "email": "billing@example.org",
            "timezone": "America/Los_Angeles",
            "currency": "usd",
            "platform_fee": Decimal("1.00"),
            "pass_fees_to_member": False,
        }
        values.update(overrides)
        org = Organization(**values)
        session.add(org)
        session.flush()
        return org

    return _make


@pytest.fixture
def test_org(make_organization: Callable[..., Organization]) -> Organization:
    """Create a test organization."""
    return make_organization()


@pytest.fixture
def test_plan(session: Session, test_org: Organization) -> Plan:
    """Create a single plan with monthly, biannual and annual pricing."""
    plan = Plan(
        plan_id=uuid4(),
        organization_id=test_org.organization_id,
        type="single",
        name="Single",
        pricing=dict(DEFAULT_PRICING),
        enrollment_fee_cents=50000,
    )
    session.add(plan)
    session.flush()
    return plan


@pytest.fixture
def make_membership(
    session: Session,
    test_org: Organization,
    test_plan: Plan,
) -> Callable[..., Membership]:
    """Factory for a member plus membership.

    Defaults describe a billable membership: current, enrollment fee paid,
    agreement signed, monthly, due 2025-03-01.
    """

    def _make(
        *,
        organization: Organization | None = None,
        plan: Plan | None = None,
        email: str | None = None,
        **overrides: Any,
    ) -> Membership:
        org = organization or test_org
        if plan is None and org is test_org:
            plan = test_plan
        member = Member(
            member_id=uuid4(),
            organization_id=org.organization_id,
            first_name="Amina",
            last_name="Rahimi",
            email=email or f"member-{uuid4().hex[:8]}@example.com",
            preferred_language="en",
        )
        session.add(member)
        session.flush()

        values: dict[str, Any] = {
            "membership_id": uuid4(),
            "organization_id": org.organization_id,
            "member_id": member.member_id,
            "plan_id": plan.plan_id if plan else None,
            "status": "current",
            "billing_frequency": "monthly",
            "paid_months": 0,
            "enrollment_fee_paid": True,
            "join_date": date(2025, 1, 1),
            "next_payment_due": date(2025, 3, 1),
            "agreement_signed_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        }
        values.update(overrides)
        membership = Membership(**values)
        session.add(membership)
        session.flush()
        return membership

    return _make


@pytest.fixture
def make_payment(session: Session) -> Callable[..., Payment]:
    """Factory for payments belonging to a membership."""

    def _make(membership: Membership, **overrides: Any) -> Payment:
        values: dict[str, Any] = {
            "payment_id": uuid4(),
            "organization_id": membership.organization_id,
            "membership_id": membership.membership_id,
            "member_id": membership.member_id,
            "type": "dues",
            "status": "pending",
            "amount_cents": 2000,
            "total_charged_cents": 2000,
            "net_amount_cents": 1812,
            "months_credited": 1,
            "due_date": membership.next_payment_due,
        }
        values.update(overrides)
        payment = Payment(**values)
        session.add(payment)
        session.flush()
        return payment

    return _make
