"""Versioned tier configuration store.

A configuration row is editable until the first workflow instance pins it
(``referenced_at``). After that a revision writes a new row in the same
lineage with ``version + 1`` and deactivates the old one, so in-flight
instances keep resolving against exactly the tiers they started with.
"""
import logging
import uuid
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from approval_routing.core.errors import (
    ConfigurationError,
    ConfigurationVersionMismatchError,
    NotFoundError,
)
from approval_routing.models.tier_configuration import TierConfiguration
from approval_routing.schemas.tiers import (
    ApprovalTier,
    TierConfigSnapshot,
    TierConfigurationIn,
    TierConfigurationRevise,
)

logger = logging.getLogger(__name__)


# ─── Snapshots ───

def load_snapshot(config: TierConfiguration) -> TierConfigSnapshot:
    """Validate a stored configuration into the snapshot the resolver consumes.

    Raises:
        ConfigurationError: stored tiers fail validation (unknown trigger type,
            operator/value mismatch, duplicate levels, ...).
    """
    try:
        return TierConfigSnapshot(
            id=config.id,
            name=config.name,
            category=config.category,
            version=config.version,
            cumulative=config.cumulative,
            tiers=config.tiers,
        )
    except ValidationError as exc:
        logger.error("Tier configuration %s v%s is invalid: %s", config.id, config.version, exc)
        raise ConfigurationError(
            f"Tier configuration {config.name!r} v{config.version} is invalid: {exc.error_count()} error(s).",
            configuration_id=str(config.id),
            errors=exc.errors(include_url=False),
        ) from exc


def _dump_tiers(tiers: list[ApprovalTier]) -> list[dict]:
    return [t.model_dump(mode="json") for t in tiers]


# ─── Queries ───

def get_configuration(db: Session, config_id: uuid.UUID) -> TierConfiguration:
    config = db.get(TierConfiguration, config_id)
    if config is None:
        raise NotFoundError(f"Tier configuration {config_id} not found.")
    return config


def default_for(db: Session, category: str) -> TierConfiguration | None:
    return db.execute(
        select(TierConfiguration).where(
            TierConfiguration.category == category,
            TierConfiguration.is_default.is_(True),
            TierConfiguration.is_active.is_(True),
        )
    ).scalars().first()


def latest_in_lineage(db: Session, lineage_id: uuid.UUID) -> TierConfiguration:
    return db.execute(
        select(TierConfiguration)
        .where(TierConfiguration.lineage_id == lineage_id)
        .order_by(TierConfiguration.version.desc())
    ).scalars().first()


def list_configurations(
    db: Session, category: str | None = None, include_inactive: bool = False
) -> list[TierConfiguration]:
    q = select(TierConfiguration).order_by(TierConfiguration.category, TierConfiguration.name, TierConfiguration.version)
    if category:
        q = q.where(TierConfiguration.category == category)
    if not include_inactive:
        q = q.where(TierConfiguration.is_active.is_(True))
    return list(db.execute(q).scalars().all())


# ─── Mutations ───

def _demote_defaults(db: Session, category: str, keep_id: uuid.UUID | None = None) -> None:
    stmt = update(TierConfiguration).where(
        TierConfiguration.category == category,
        TierConfiguration.is_default.is_(True),
    )
    if keep_id is not None:
        stmt = stmt.where(TierConfiguration.id != keep_id)
    db.execute(stmt.values(is_default=False).execution_options(synchronize_session="fetch"))
    db.flush()


def create_configuration(
    db: Session, data: TierConfigurationIn, actor_id: str, at: datetime
) -> TierConfiguration:
    if data.is_default:
        _demote_defaults(db, data.category.value)
    config = TierConfiguration(
        name=data.name,
        description=data.description,
        category=data.category.value,
        lineage_id=uuid.uuid4(),
        version=1,
        is_default=data.is_default,
        is_active=True,
        cumulative=data.cumulative,
        tiers=_dump_tiers(data.tiers),
        created_by=actor_id,
        created_at=at,
        updated_at=at,
    )
    db.add(config)
    db.flush()
    logger.info("Tier configuration %s created: %s/%s v1", config.id, config.category, config.name)
    return config


def revise_configuration(
    db: Session,
    config_id: uuid.UUID,
    data: TierConfigurationRevise,
    actor_id: str,
    at: datetime,
) -> TierConfiguration:
    """Apply a revision on top of the latest version of a configuration's lineage.

    Raises:
        ConfigurationVersionMismatchError: ``base_version`` is not the latest version.
        ConfigurationError: the revised tiers fail validation.
    """
    base = latest_in_lineage(db, get_configuration(db, config_id).lineage_id)
    if data.base_version != base.version:
        raise ConfigurationVersionMismatchError(
            f"Configuration {base.name!r} is at version {base.version}, not {data.base_version}; "
            "reload it and apply your changes again.",
            configuration_id=base.id,
            latest_version=base.version,
        )

    tiers = data.tiers if data.tiers is not None else base.tiers
    cumulative = data.cumulative if data.cumulative is not None else base.cumulative
    try:
        snapshot = TierConfigSnapshot(category=base.category, cumulative=cumulative, tiers=tiers)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Revised tiers are invalid: {exc.error_count()} error(s).",
            errors=exc.errors(include_url=False),
        ) from exc

    if base.referenced_at is None:
        base.name = data.name or base.name
        if data.description is not None:
            base.description = data.description
        base.cumulative = snapshot.cumulative
        base.tiers = _dump_tiers(snapshot.tiers)
        base.version += 1
        base.updated_at = at
        db.flush()
        logger.info("Tier configuration %s revised in place to v%d", base.id, base.version)
        return base

    was_default = base.is_default
    base.is_active = False
    base.is_default = False
    base.updated_at = at
    db.flush()

    revised = TierConfiguration(
        name=data.name or base.name,
        description=data.description if data.description is not None else base.description,
        category=base.category,
        lineage_id=base.lineage_id,
        version=base.version + 1,
        supersedes_id=base.id,
        is_default=was_default,
        is_active=True,
        cumulative=snapshot.cumulative,
        tiers=_dump_tiers(snapshot.tiers),
        created_by=actor_id,
        created_at=at,
        updated_at=at,
    )
    db.add(revised)
    db.flush()
    logger.info(
        "Tier configuration %s is referenced; revision written as %s v%d",
        base.id, revised.id, revised.version,
    )
    return revised


def set_default(db: Session, config_id: uuid.UUID, at: datetime) -> TierConfiguration:
    config = get_configuration(db, config_id)
    if not config.is_active:
        raise ConfigurationError(
            f"Configuration {config.name!r} v{config.version} is inactive and cannot be the default.",
        )
    _demote_defaults(db, config.category, keep_id=config.id)
    config.is_default = True
    config.updated_at = at
    db.flush()
    logger.info("Tier configuration %s is now the default for %s", config.id, config.category)
    return config


def mark_referenced(db: Session, config: TierConfiguration, at: datetime) -> None:
    """Freeze a configuration the first time an instance pins it."""
    if config.referenced_at is None:
        config.referenced_at = at
        db.flush()

