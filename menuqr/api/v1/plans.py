"""Plan catalog endpoints."""

from fastapi import APIRouter, HTTPException, Request

from menuqr.models.plans import Plan
from menuqr.services.plan_catalog import PlanCatalog

router = APIRouter(prefix="/plans", tags=["plans"])


def _get_catalog(request: Request) -> PlanCatalog:
    catalog = getattr(request.app.state, "plan_catalog", None)
    if catalog is None:
        raise HTTPException(status_code=503, detail="Plan catalog unavailable")
    return catalog


@router.get("", response_model=list[Plan])
async def list_plans(request: Request) -> list[Plan]:
    """Active plans, cheapest tier first."""
    return _get_catalog(request).list_plans()


@router.get("/{slug}", response_model=Plan)
async def get_plan(slug: str, request: Request) -> Plan:
    return _get_catalog(request).get_plan(slug)
