"""Pytest fixtures for HALOnet engine tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from halonet.engine_config import ApprovalConfig, EngineConfig, NachaConfig, SubmissionConfig
from halonet.events import EventEmitter
from halonet.models import Base
from halonet.providers import AchStubProvider
from halonet.services import (
    ApprovalWorkflow,
    BatchManager,
    CompanySettingsService,
    EntryInput,
    RiskControlEvaluator,
    RiskControlService,
    RiskEventRecorder,
    SubmissionGateway,
)

# Routing numbers with valid ABA checksums
ROUTING_A = "091000019"
ROUTING_B = "021000021"
ROUTING_C = "011000015"

# Use in-memory SQLite for tests; one shared connection across sessions
TEST_DATABASE_URL = "sqlite://"


class FixedClock:
    """Injectable clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_entry(
    amount: str | Decimal = "100.00",
    transaction_type: str = "credit",
    routing_number: str = ROUTING_A,
    account_number: str = "123456789",
    **kwargs: Any,
) -> EntryInput:
    """Build a valid entry; keyword arguments override any field."""
    return EntryInput(
        recipient_name=kwargs.pop("recipient_name", "Jane Doe"),
        routing_number=routing_number,
        account_number=account_number,
        amount=Decimal(amount),
        transaction_type=transaction_type,
        **kwargs,
    )


@pytest.fixture
def engine():
    """Create test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(engine, class_=Session, expire_on_commit=False, autoflush=False)


@pytest.fixture
def session(session_factory):
    """Create a database session for each test."""
    with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def company_id() -> UUID:
    return uuid4()


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def events(emitter: EventEmitter) -> list:
    """Every event the emitter dispatches, in order."""
    received: list = []
    emitter.on_all(received.append)
    return received


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        approval=ApprovalConfig(default_ttl_hours=48, default_threshold=1),
        submission=SubmissionConfig(
            timeout_seconds=5.0,
            retry_count=2,
            retry_backoff_seconds=1.0,
            nsf_fee=Decimal("25.00"),
        ),
        nacha=NachaConfig(),
    )


@pytest.fixture
def recorder(session, emitter, clock) -> RiskEventRecorder:
    return RiskEventRecorder(session, emitter=emitter, clock=clock)


@pytest.fixture
def evaluator(session, recorder, clock) -> RiskControlEvaluator:
    return RiskControlEvaluator(session, recorder=recorder, clock=clock)


@pytest.fixture
def manager(session, evaluator, emitter, clock) -> BatchManager:
    return BatchManager(session, evaluator=evaluator, emitter=emitter, clock=clock)


@pytest.fixture
def controls(session) -> RiskControlService:
    return RiskControlService(session)


@pytest.fixture
def company_settings(session) -> CompanySettingsService:
    return CompanySettingsService(session)


@pytest.fixture
def workflow(session, emitter, clock, engine_config) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        session, config=engine_config.approval, emitter=emitter, clock=clock
    )


@pytest.fixture
def provider() -> AchStubProvider:
    return AchStubProvider()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the gateway."""
    return []


@pytest.fixture
def gateway(session, provider, evaluator, engine_config, emitter, clock, sleeps) -> SubmissionGateway:
    return SubmissionGateway(
        session,
        {"ach_stub": provider},
        evaluator=evaluator,
        config=engine_config,
        emitter=emitter,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def effective_date(clock: FixedClock) -> date:
    """Next weekday after the clock's date."""
    day = clock().date() + timedelta(days=1)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


@pytest.fixture
def draft_batch(manager, company_id, effective_date):
    """Draft batch: $1,000 credit plus $200 debit."""
    return manager.create_batch(
        company_id,
        "payroll",
        effective_date,
        [
            make_entry("1000.00", "credit", ROUTING_A, "123456789"),
            make_entry(
                "200.00",
                "debit",
                ROUTING_B,
                "987654321",
                recipient_name="County Court",
                payment_type="garnishment",
                garnishment_priority=1,
            ),
        ],
        created_by="alice",
    )


@pytest.fixture
def approval_control(controls, company_id):
    """Batches over $500 need approval."""
    return controls.create(
        company_id,
        "amount_threshold",
        "Large batch approval",
        {"max_batch_amount": "500.00"},
        "require_approval",
    )


@pytest.fixture
def gated_batch(approval_control, draft_batch):
    """Draft batch that requires approval."""
    assert draft_batch.requires_approval is True
    return draft_batch


@pytest.fixture
def approved_batch(workflow, gated_batch):
    """Batch with a granted single-approver request."""
    request = workflow.request_approval(gated_batch.id, required_approvers=["bob"])
    workflow.approve(request.id, "bob")
    return gated_batch
