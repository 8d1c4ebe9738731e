"""Tier configuration endpoints (ADMIN for writes)."""
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from approval_routing.core.clock import Clock
from approval_routing.core.config import settings
from approval_routing.core.deps import Actor, get_clock, get_current_actor, require_role
from approval_routing.db.session import get_session, get_sync_session
from approval_routing.models.tier_configuration import TierConfiguration, WorkflowCategory
from approval_routing.schemas.tiers import TierConfigurationIn, TierConfigurationOut, TierConfigurationRevise
from approval_routing.services import tier_configs as config_svc

router = APIRouter()

AdminDep = Annotated[Actor, Depends(require_role(settings.ADMIN_ROLE))]


@router.get("", response_model=list[TierConfigurationOut], summary="List tier configurations")
async def list_configurations(
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(get_current_actor)],
    category: WorkflowCategory | None = Query(default=None),
    include_inactive: bool = Query(default=False),
):
    q = select(TierConfiguration).order_by(
        TierConfiguration.category, TierConfiguration.name, TierConfiguration.version
    )
    if category is not None:
        q = q.where(TierConfiguration.category == category.value)
    if not include_inactive:
        q = q.where(TierConfiguration.is_active.is_(True))
    result = await db.execute(q)
    return [TierConfigurationOut.model_validate(c) for c in result.scalars().all()]


@router.get("/{config_id}", response_model=TierConfigurationOut, summary="Get one configuration version")
async def get_configuration(
    config_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: Annotated[Actor, Depends(get_current_actor)],
):
    config = await db.get(TierConfiguration, config_id)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tier configuration not found.")
    return TierConfigurationOut.model_validate(config)


@router.post(
    "",
    response_model=TierConfigurationOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a tier configuration (ADMIN)",
)
def create_configuration(
    body: TierConfigurationIn,
    db: Annotated[Session, Depends(get_sync_session)],
    clock: Annotated[Clock, Depends(get_clock)],
    actor: AdminDep,
):
    config = config_svc.create_configuration(db, body, actor.id, clock.now())
    db.commit()
    return TierConfigurationOut.model_validate(config)


@router.put(
    "/{config_id}",
    response_model=TierConfigurationOut,
    summary="Revise a configuration; referenced versions are superseded, not edited (ADMIN)",
)
def revise_configuration(
    config_id: uuid.UUID,
    body: TierConfigurationRevise,
    db: Annotated[Session, Depends(get_sync_session)],
    clock: Annotated[Clock, Depends(get_clock)],
    actor: AdminDep,
):
    config = config_svc.revise_configuration(db, config_id, body, actor.id, clock.now())
    db.commit()
    return TierConfigurationOut.model_validate(config)


@router.post(
    "/{config_id}/default",
    response_model=TierConfigurationOut,
    summary="Make this configuration the default for its category (ADMIN)",
)
def set_default(
    config_id: uuid.UUID,
    db: Annotated[Session, Depends(get_sync_session)],
    clock: Annotated[Clock, Depends(get_clock)],
    actor: AdminDep,
):
    config = config_svc.set_default(db, config_id, clock.now())
    db.commit()
    return TierConfigurationOut.model_validate(config)
