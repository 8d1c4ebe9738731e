"""Seed script: default tier configurations per workflow category and a sample directory.

Idempotent: a category that already has a default configuration is skipped.
Run: python scripts/seed.py  (from backend/)
"""
import asyncio
import json
import os
import sys
import uuid
from datetime import datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from approval_routing.core.config import settings
from approval_routing.models.tier_configuration import TierConfiguration
from approval_routing.schemas.tiers import TierConfigurationIn

NOW = datetime.now(timezone.utc)

SAMPLE_DIRECTORY = {
    "users": {
        "alice": {"roles": ["employee"], "department": "engineering", "manager": "mgr.eng"},
        "mgr.eng": {"roles": ["manager"], "department": "engineering", "manager": "dir.eng"},
        "dir.eng": {"roles": ["director"], "department": "engineering", "manager": "cfo"},
        "fin.lead": {"roles": ["finance"], "department": "finance", "manager": "cfo"},
        "hr.partner": {"roles": ["hr"], "department": "people", "manager": "cfo"},
        "cfo": {"roles": ["executive", "finance"], "department": "finance", "executive": True},
    },
    "department_heads": {"engineering": "dir.eng", "finance": "cfo", "people": "cfo"},
}


def _amount_gt(value: int) -> dict:
    return {"trigger_type": "amount", "operator": "greater_than", "value": {"kind": "number", "value": value}}


DEFAULT_CONFIGURATIONS = [
    {
        "name": "Standard purchase approvals",
        "category": "purchase",
        "is_default": True,
        "cumulative": True,
        "tiers": [
            {
                "level": 1, "name": "Manager",
                "thresholds": [_amount_gt(0)],
                "approvers": [{"type": "manager"}],
                "escalation": {"timeout_hours": 48, "reminder_interval_hours": 24},
            },
            {
                "level": 2, "name": "Department head",
                "thresholds": [_amount_gt(1000)],
                "approvers": [{"type": "department_head"}],
                "escalation": {"timeout_hours": 72, "reminder_interval_hours": 24},
            },
            {
                "level": 3, "name": "Finance and executive",
                "thresholds": [_amount_gt(5000)],
                "approvers": [
                    {"type": "role", "role": "finance", "order": 1, "is_required": True},
                    {"type": "executive", "order": 2, "is_required": True},
                ],
                "require_all_approvers": True,
                "sequential": True,
                "max_approval_days": 5,
            },
        ],
    },
    {
        "name": "Expense reports",
        "category": "expense",
        "is_default": True,
        "cumulative": False,
        "tiers": [
            {
                "level": 1, "name": "Manager",
                "thresholds": [_amount_gt(0)],
                "approvers": [{"type": "manager"}],
                "auto_escalate_hours": 24,
            },
            {
                "level": 2, "name": "Finance",
                "thresholds": [_amount_gt(2500)],
                "approvers": [{"type": "role", "role": "finance"}],
                "escalation": {"timeout_hours": 48, "escalate_to_user_id": "cfo"},
            },
        ],
    },
    {
        "name": "Time off",
        "category": "time_off",
        "is_default": True,
        "cumulative": True,
        "tiers": [
            {
                "level": 1, "name": "Manager",
                "thresholds": [
                    {"trigger_type": "urgency", "operator": "in_list",
                     "value": {"kind": "text_set", "values": ["low", "normal", "high"]}},
                ],
                "approvers": [{"type": "manager"}],
                "auto_escalate_hours": 72,
                "auto_approve_on_timeout": True,
            },
            {
                "level": 2, "name": "People team",
                "thresholds": [
                    {"trigger_type": "urgency", "operator": "equals", "value": {"kind": "text", "value": "high"}},
                ],
                "approvers": [{"type": "role", "role": "hr"}],
            },
        ],
    },
]


# ─── Upsert helpers ───────────────────────────────────────────────────────────

async def _upsert_configuration(db: AsyncSession, raw: dict) -> TierConfiguration:
    data = TierConfigurationIn.model_validate(raw)
    result = await db.execute(
        select(TierConfiguration).where(
            TierConfiguration.category == data.category.value,
            TierConfiguration.is_default.is_(True),
            TierConfiguration.is_active.is_(True),
        )
    )
    existing = result.scalars().first()
    if existing:
        print(f"  [skip] {data.category.value}: {existing.name} v{existing.version}")
        return existing
    config = TierConfiguration(
        name=data.name,
        description=data.description,
        category=data.category.value,
        lineage_id=uuid.uuid4(),
        version=1,
        is_default=True,
        is_active=True,
        cumulative=data.cumulative,
        tiers=[t.model_dump(mode="json") for t in data.tiers],
        created_by="seed",
        created_at=NOW,
        updated_at=NOW,
    )
    db.add(config)
    await db.flush()
    print(f"  [new]  {data.category.value}: {data.name} (tiers {[t.level for t in data.tiers]})")
    return config


def _write_directory(path: str) -> None:
    if os.path.exists(path):
        print(f"  [skip] Directory file {path}")
        return
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(SAMPLE_DIRECTORY, fh, indent=2)
    print(f"  [new]  Directory file {path} ({len(SAMPLE_DIRECTORY['users'])} users)")


async def seed() -> None:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async with SessionLocal() as db:
        print("\n── Tier configurations ──")
        for raw in DEFAULT_CONFIGURATIONS:
            await _upsert_configuration(db, raw)
        await db.commit()

    await engine.dispose()

    if settings.DIRECTORY_FILE:
        print("\n── Identity directory ──")
        _write_directory(settings.DIRECTORY_FILE)

    print("\nSeed complete.")
    print("  Default configurations: purchase, expense, time_off")
    print("  Sample users: alice (requester), mgr.eng, dir.eng, fin.lead, hr.partner, cfo")


if __name__ == "__main__":
    asyncio.run(seed())
