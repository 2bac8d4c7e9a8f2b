"""
Citizens API — staff reads and corrections of citizen contact data.

A citizen is reachable by a caller when at least one of their cases is.
Edited fields are re-mirrored onto the citizen's cases and clear the
matching missing-field markers.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.api.deps import get_db, require
from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.permissions import Permission
from ouvidoria.auth.visibility import scope_query
from ouvidoria.errors import AccessDeniedError, NotFoundError
from ouvidoria.models import Case, CitizenProfile
from ouvidoria.schemas.schemas import CitizenOut, CitizenUpdate
from ouvidoria.services.citizens import CitizenResolver

router = APIRouter(prefix="/api/citizens", tags=["citizens"])


async def _get_visible_citizen(citizen_id: str, db: AsyncSession, ctx: RequestContext) -> CitizenProfile:
    profile = await db.get(CitizenProfile, citizen_id)
    if profile is None:
        raise NotFoundError("Citizen", citizen_id)
    visible_case = await db.scalar(
        await scope_query(db, ctx, select(Case.id).where(Case.citizen_id == citizen_id).limit(1))
    )
    if visible_case is None:
        raise AccessDeniedError("Citizen has no case within your visibility scope")
    return profile


@router.get("/{citizen_id}", response_model=CitizenOut)
async def get_citizen(
    citizen_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.CITIZENS_READ)),
):
    return CitizenOut.model_validate(await _get_visible_citizen(citizen_id, db, ctx))


@router.put("/{citizen_id}", response_model=CitizenOut)
async def update_citizen(
    citizen_id: str,
    body: CitizenUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.CITIZENS_EDIT)),
):
    await _get_visible_citizen(citizen_id, db, ctx)
    profile = await CitizenResolver(db).update_fields(citizen_id, ctx, **body.model_dump(exclude_unset=True))
    return CitizenOut.model_validate(profile)
