from fastapi import APIRouter

from approval_routing.api.v1 import delegations, tier_configs, workflows

api_router = APIRouter()

api_router.include_router(workflows.router, prefix="/workflows", tags=["workflows"])
api_router.include_router(delegations.router, prefix="/delegations", tags=["delegations"])
api_router.include_router(tier_configs.router, prefix="/tier-configurations", tags=["tier-configurations"])
