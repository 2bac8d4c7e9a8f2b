"""
Agent API — hand a case to the automation agent.

The agent's proposals come back asynchronously through
`POST /api/webhooks/automation/agent-result`.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.api.deps import (
    build_case_manager,
    get_automation,
    get_db,
    get_delayed_delivery,
    get_outbound,
    require,
)
from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.permissions import Permission
from ouvidoria.schemas.schemas import AgentRunRequest, AgentRunResponse
from ouvidoria.services.agent_policy import AgentRunService
from ouvidoria.services.automation import AutomationClient
from ouvidoria.services.job_queue import DelayedDelivery
from ouvidoria.services.outbound import OutboundSender

router = APIRouter(prefix="/api/agent", tags=["agent"])


@router.post("/run", response_model=AgentRunResponse, status_code=202)
async def run_agent(
    body: AgentRunRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.AGENT_RUN)),
    automation: AutomationClient = Depends(get_automation),
    outbound: OutboundSender = Depends(get_outbound),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
):
    manager = build_case_manager(db, ctx, outbound, delivery)
    run = await AgentRunService(db, automation, manager).dispatch_run(ctx, body.case_id, body.message_id)
    return AgentRunResponse(agent_run_id=run.id, status=run.status)
