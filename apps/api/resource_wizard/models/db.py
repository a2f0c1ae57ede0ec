from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Integer,
    Text,
    DateTime,
    ForeignKey,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from resource_wizard.core.database import Base


class Resource(Base):
    """A wizard-built resource (draft until exported)"""

    __tablename__ = "resources"

    id = Column(String(60), primary_key=True)
    owner_key = Column(String(80), nullable=False, index=True)
    kind = Column(String(30), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=False, default="")
    style = Column(JSON, nullable=True)  # StylePreset snapshot
    content = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="draft")  # draft, complete
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    assets = relationship("Asset", back_populates="resource", cascade="all, delete-orphan")


class Character(Base):
    """Reusable character, matched by name per owner"""

    __tablename__ = "characters"

    id = Column(String(60), primary_key=True)
    owner_key = Column(String(80), nullable=False, index=True)
    name = Column(String(80), nullable=False)
    description = Column(Text, nullable=False, default="")
    personality = Column(Text, nullable=False, default="")
    prompt_fragment = Column(Text, nullable=False, default="")
    style_id = Column(String(60), nullable=True)  # style the character was first created under
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    portraits = relationship(
        "StyledPortrait", back_populates="character", cascade="all, delete-orphan"
    )


class StyledPortrait(Base):
    """Cached reference portrait of a character in one style"""

    __tablename__ = "styled_portraits"
    __table_args__ = (
        UniqueConstraint("character_id", "style_id", name="uq_styled_portrait_character_style"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    character_id = Column(String(60), ForeignKey("characters.id"), nullable=False, index=True)
    style_id = Column(String(60), nullable=False)
    image_url = Column(String(500), nullable=False)
    prompt = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    character = relationship("Character", back_populates="portraits")


class Asset(Base):
    """One generated image slot of a resource, identified by (asset_kind, asset_key)"""

    __tablename__ = "assets"
    __table_args__ = (
        UniqueConstraint("owner_id", "asset_kind", "asset_key", name="uq_asset_owner_kind_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(60), ForeignKey("resources.id"), nullable=False, index=True)
    asset_kind = Column(String(40), nullable=False)
    asset_key = Column(String(120), nullable=False)
    current_version = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    resource = relationship("Resource", back_populates="assets")
    versions = relationship(
        "AssetVersion",
        back_populates="asset",
        order_by="AssetVersion.version",
        cascade="all, delete-orphan",
    )


class AssetVersion(Base):
    __tablename__ = "asset_versions"
    __table_args__ = (
        UniqueConstraint("asset_id", "version", name="uq_asset_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    image_url = Column(String(500), nullable=False)
    prompt = Column(Text, nullable=True)
    params = Column(JSON, nullable=True)  # aspect, green_screen, character_ids, style_id
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    asset = relationship("Asset", back_populates="versions")
