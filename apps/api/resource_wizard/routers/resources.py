from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from resource_wizard.core.database import get_db
from resource_wizard.core.dependencies import get_user_key
from resource_wizard.core.exceptions import AuthorizationError, NotFoundError
from resource_wizard.models.db import Resource
from resource_wizard.models.dto import (
    AssetRecord,
    DraftListResponse,
    DraftSummary,
    ResourceKind,
    ResourceRecord,
)
from resource_wizard.services.storage import ResourceStore, to_record

router = APIRouter()


async def get_owned_resource(
    resource_id: str,
    db: AsyncSession = Depends(get_db),
    user_key: str = Depends(get_user_key),
) -> Resource:
    resource = await db.get(Resource, resource_id)
    if resource is None:
        raise NotFoundError("Resource", resource_id)
    if resource.owner_key != user_key:
        raise AuthorizationError()
    return resource


@router.get("/drafts", response_model=DraftListResponse)
async def list_drafts(
    kind: Optional[ResourceKind] = None,
    db: AsyncSession = Depends(get_db),
    user_key: str = Depends(get_user_key),
    limit: int = 20,
    offset: int = 0,
):
    """
    Drafts owned by the caller

    - Most recently updated first
    - Optional `kind` filter
    """
    conditions = [Resource.owner_key == user_key, Resource.status == "draft"]
    if kind is not None:
        conditions.append(Resource.kind == kind.value)

    count_result = await db.execute(select(func.count(Resource.id)).where(*conditions))
    total = count_result.scalar() or 0

    result = await db.execute(
        select(Resource)
        .where(*conditions)
        .order_by(Resource.updated_at.desc())
        .limit(limit)
        .offset(offset)
    )

    return DraftListResponse(
        drafts=[
            DraftSummary(
                resource_id=r.id,
                name=r.name,
                kind=ResourceKind(r.kind),
                updated_at=r.updated_at,
            )
            for r in result.scalars().all()
        ],
        total=total,
    )


@router.get("/{resource_id}", response_model=ResourceRecord)
async def get_resource(resource: Resource = Depends(get_owned_resource)):
    return to_record(resource)


@router.get("/{resource_id}/assets", response_model=List[AssetRecord])
async def list_resource_assets(resource: Resource = Depends(get_owned_resource)):
    """Latest version of every generated image of the resource"""
    return await ResourceStore().list_assets(resource.id)
