"""
Storage Service: resource drafts and generated asset versions (SQLAlchemy)
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from resource_wizard.core.database import AsyncSessionLocal
from resource_wizard.core.errors import DraftSaveError
from resource_wizard.models.db import Asset, AssetVersion, Resource
from resource_wizard.models.dto import AssetRecord, ResourceKind, ResourceRecord, StylePreset

logger = structlog.get_logger()


def new_resource_id() -> str:
    return f"res_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


def to_record(resource: Resource) -> ResourceRecord:
    return ResourceRecord(
        id=resource.id,
        owner_key=resource.owner_key,
        kind=resource.kind,
        name=resource.name,
        description=resource.description or "",
        style=StylePreset.model_validate(resource.style) if resource.style else None,
        content=resource.content or {},
        status=resource.status,
        created_at=resource.created_at,
        updated_at=resource.updated_at,
    )


class ResourceStore:
    """DraftStore and AssetLookup over the resources/assets tables"""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    # ==================== Drafts ====================

    async def create_draft(
        self,
        owner_key: str,
        kind: ResourceKind,
        name: str,
        description: str,
        style: Optional[StylePreset],
        content: Dict[str, Any],
    ) -> str:
        resource_id = new_resource_id()
        async with self.session_factory() as session:
            try:
                session.add(
                    Resource(
                        id=resource_id,
                        owner_key=owner_key,
                        kind=ResourceKind(kind).value,
                        name=name,
                        description=description,
                        style=style.model_dump() if style else None,
                        content=content,
                        status="draft",
                    )
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Failed to create draft", owner_key=owner_key, error=str(e))
                raise DraftSaveError(f"Failed to create draft: {e}") from e

        logger.info("Draft saved", resource_id=resource_id, kind=ResourceKind(kind).value)
        return resource_id

    async def update_draft(
        self,
        resource_id: str,
        name: Optional[str] = None,
        content: Optional[Dict[str, Any]] = None,
        style: Optional[StylePreset] = None,
    ) -> None:
        async with self.session_factory() as session:
            try:
                resource = await session.get(Resource, resource_id)
                if resource is None:
                    raise DraftSaveError(f"Resource not found: {resource_id}")
                if name is not None:
                    resource.name = name
                if content is not None:
                    resource.content = content
                if style is not None:
                    resource.style = style.model_dump()
                resource.updated_at = datetime.utcnow()
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Failed to update draft", resource_id=resource_id, error=str(e))
                raise DraftSaveError(f"Failed to update draft: {e}") from e

    async def get_resource(self, resource_id: str) -> Optional[ResourceRecord]:
        async with self.session_factory() as session:
            resource = await session.get(Resource, resource_id)
            return to_record(resource) if resource else None

    async def list_drafts(self, owner_key: str, kind: ResourceKind) -> List[ResourceRecord]:
        """Drafts of one kind, most recently updated first"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Resource)
                .where(
                    Resource.owner_key == owner_key,
                    Resource.kind == ResourceKind(kind).value,
                    Resource.status == "draft",
                )
                .order_by(Resource.updated_at.desc())
            )
            return [to_record(r) for r in result.scalars().all()]

    # ==================== Assets ====================

    async def list_assets(self, owner_id: str) -> List[AssetRecord]:
        """Latest version of every asset attached to the owner"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Asset)
                .where(Asset.owner_id == owner_id)
                .options(selectinload(Asset.versions))
            )
            records = []
            for asset in result.scalars().all():
                current = next(
                    (v for v in asset.versions if v.version == asset.current_version), None
                )
                records.append(
                    AssetRecord(
                        owner_id=asset.owner_id,
                        asset_kind=asset.asset_kind,
                        asset_key=asset.asset_key,
                        url=current.image_url if current else None,
                        version=current.version if current else 0,
                        updated_at=asset.updated_at,
                    )
                )
            return records

    async def record_asset_version(
        self,
        owner_id: str,
        asset_kind: str,
        asset_key: str,
        image_url: str,
        prompt: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append a version to the asset (creating it on first use) and make it current"""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    select(Asset)
                    .where(
                        Asset.owner_id == owner_id,
                        Asset.asset_kind == asset_kind,
                        Asset.asset_key == asset_key,
                    )
                    .options(selectinload(Asset.versions))
                )
                asset = result.scalar_one_or_none()
                if asset is None:
                    asset = Asset(owner_id=owner_id, asset_kind=asset_kind, asset_key=asset_key)
                    session.add(asset)
                    await session.flush()
                    version = 1
                else:
                    version = max((v.version for v in asset.versions), default=0) + 1

                session.add(
                    AssetVersion(
                        asset_id=asset.id,
                        version=version,
                        image_url=image_url,
                        prompt=prompt,
                        params=params,
                    )
                )
                asset.current_version = version
                asset.updated_at = datetime.utcnow()
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    "Failed to record asset version",
                    owner_id=owner_id,
                    asset_key=asset_key,
                    error=str(e),
                )
                raise

        return version
