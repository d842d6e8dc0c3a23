"""Tests for dashboard metrics."""

from decimal import Decimal
from uuid import uuid4

import pytest

from halonet.services import DashboardService

from .conftest import make_entry


@pytest.fixture
def dashboard(session, clock) -> DashboardService:
    return DashboardService(session, clock=clock)


class TestDashboardMetrics:
    def test_empty_company(self, dashboard):
        metrics = dashboard.get_metrics(uuid4())

        assert metrics.total_batches == 0
        assert metrics.batches_by_status == {}
        assert metrics.submitted_volume == Decimal("0.00")

    def test_batches_volume_and_entry_outcomes(
        self, dashboard, gateway, manager, evaluator, controls, draft_batch, company_id, effective_date
    ):
        gateway.submit_to_provider(draft_batch.id)
        credit = next(e for e in draft_batch.entries if e.transaction_type == "credit")
        gateway.void_payment(credit.id, "employee terminated")
        second = manager.create_batch(company_id, "bonus", effective_date, [make_entry("100.00")])
        controls.create(
            company_id, "amount_threshold", "Watch", {"max_batch_amount": "50.00"}, "flag"
        )
        evaluator.evaluate(second)

        metrics = dashboard.get_metrics(company_id)

        assert metrics.batches_by_status == {"submitted": 1, "draft": 1}
        assert metrics.total_batches == 2
        assert metrics.submitted_volume == Decimal("1200.00")
        assert metrics.voided_entries == 1
        assert metrics.returned_entries == 0
        assert metrics.active_risk_events == 1
        assert metrics.critical_risk_events == 0

    def test_lapsed_approvals_are_not_pending(self, dashboard, workflow, gated_batch, company_id, clock):
        workflow.request_approval(gated_batch.id, required_approvers=["bob"])

        assert dashboard.get_metrics(company_id).pending_approvals == 1

        clock.advance(hours=49)

        assert dashboard.get_metrics(company_id).pending_approvals == 0

    def test_scoped_to_company(self, dashboard, draft_batch):
        assert dashboard.get_metrics(uuid4()).total_batches == 0
