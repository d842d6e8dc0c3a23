"""Dashboard API endpoints."""

from fastapi import APIRouter

from halonet.api.dependencies import CompanyId, Dashboard
from halonet.api.schemas import DashboardMetricsResponse

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("", response_model=DashboardMetricsResponse)
def get_dashboard(
    company_id: CompanyId,
    dashboard: Dashboard,
) -> DashboardMetricsResponse:
    """Summary counters for the company's batches, approvals and risk events."""
    return DashboardMetricsResponse.model_validate(dashboard.get_metrics(company_id))
