"""Read-only catalog routes."""
from fastapi import APIRouter

from creditledger.features.catalog.service import list_addons, list_plans


router = APIRouter(prefix="/api/catalog", tags=["catalog"])


@router.get("/plans")
def get_plans():
    return {"plans": [p.model_dump() for p in list_plans()]}


@router.get("/addons")
def get_addons():
    return {"addons": [a.model_dump(mode="json") for a in list_addons()]}
