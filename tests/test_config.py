"""Tests for settings, engine configuration, sessions and error mapping."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from halonet.api.app import status_for
from halonet.config import Settings
from halonet.database import session_scope
from halonet.engine_config import (
    ApprovalConfig,
    NachaConfig,
    SubmissionConfig,
    create_sandbox_config,
)
from halonet.exceptions import (
    ConcurrencyError,
    HalonetError,
    InvalidTransitionError,
    NotFoundError,
    ProviderTimeoutError,
    ValidationError,
)
from halonet.models import CompanyPaymentSettings


class TestSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///halonet.db")
        monkeypatch.setenv("PORT", "9001")
        monkeypatch.setenv("DEBUG", "TRUE")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("TWO_FACTOR_SECRET", "approval-key")

        settings = Settings.from_env()

        assert settings.database_url == "sqlite:///halonet.db"
        assert settings.port == 9001
        assert settings.debug is True
        assert settings.log_level == "DEBUG"
        assert settings.two_factor_secret == "approval-key"

    def test_two_factor_secret_optional(self, monkeypatch):
        monkeypatch.delenv("TWO_FACTOR_SECRET", raising=False)

        assert Settings.from_env().two_factor_secret is None


class TestEngineConfig:
    def test_sandbox_has_no_backoff(self):
        config = create_sandbox_config()

        assert config.submission.retry_backoff_seconds == 0.0
        assert config.submission.nsf_fee == Decimal("25.00")
        assert config.approval.default_ttl_hours == 48

    @pytest.mark.parametrize(
        "build",
        [
            lambda: ApprovalConfig(default_ttl_hours=0),
            lambda: ApprovalConfig(default_ttl_hours=200),
            lambda: ApprovalConfig(default_threshold=0),
            lambda: SubmissionConfig(timeout_seconds=0),
            lambda: SubmissionConfig(retry_count=11),
            lambda: NachaConfig(immediate_destination="12345"),
            lambda: NachaConfig(odfi_routing="ABC"),
        ],
    )
    def test_rejects_invalid_values(self, build):
        with pytest.raises(ValueError):
            build()


class TestSessionScope:
    def test_commits_on_success(self, session_factory):
        company_id = uuid4()

        with session_scope(session_factory) as session:
            session.add(CompanyPaymentSettings(company_id=company_id, approvers=["bob"]))

        with session_factory() as session:
            stored = session.scalars(select(CompanyPaymentSettings)).one()
            assert stored.company_id == company_id

    def test_rolls_back_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                session.add(CompanyPaymentSettings(company_id=uuid4()))
                session.flush()
                raise RuntimeError("abort")

        with session_factory() as session:
            assert session.scalars(select(CompanyPaymentSettings)).all() == []


class TestErrors:
    def test_to_dict(self):
        error = NotFoundError("PaymentBatch", "abc")

        assert error.to_dict() == {
            "detail": "PaymentBatch abc not found",
            "code": "NOT_FOUND",
            "context": {"kind": "PaymentBatch", "id": "abc"},
        }

    def test_empty_context(self):
        assert ConcurrencyError("stale").to_dict()["context"] is None

    @pytest.mark.parametrize(
        "error, expected",
        [
            (ValidationError("bad"), 422),
            (NotFoundError("RiskEvent", 1), 404),
            (InvalidTransitionError("draft", "completed"), 409),
            (ConcurrencyError("stale"), 409),
            (ProviderTimeoutError("slow"), 502),
            (HalonetError("other"), 400),
        ],
    )
    def test_http_status(self, error, expected):
        assert status_for(error) == expected
