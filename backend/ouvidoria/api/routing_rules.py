"""
Routing rules API — dry-run a message against the live rule set.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.api.deps import get_db, require
from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.permissions import Permission
from ouvidoria.schemas.schemas import RoutingSimulateRequest, RoutingSimulateResponse
from ouvidoria.services.routing_engine import RoutingEngine

router = APIRouter(prefix="/api/routing-rules", tags=["routing"])


@router.post("/simulate", response_model=RoutingSimulateResponse)
async def simulate_routing(
    body: RoutingSimulateRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.ROUTING_SIMULATE)),
):
    """Which rule would win for this text, and what it would do. Nothing is written."""
    rule, outcome = await RoutingEngine(db).simulate(body.text, body.channel)
    return RoutingSimulateResponse(
        matched=rule is not None,
        rule_id=rule.id if rule else None,
        rule_name=rule.name if rule else None,
        outcome=outcome,
    )
