"""history_tables_append_only

Revision ID: 7b4d2e8f1a63
Revises: 5e1a7c3b9d20
Create Date: 2026-10-18 09:30:00.000000

Enforce append-only semantics on the history tables at the DB level:
step history, rejection history, delegation audit and proxy approvals
accept SELECT and INSERT only.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '7b4d2e8f1a63'
down_revision: Union[str, None] = '5e1a7c3b9d20'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

HISTORY_TABLES = ("workflow_step_history", "rejection_history", "delegation_audit", "proxy_approvals")


def upgrade() -> None:
    for table in HISTORY_TABLES:
        op.execute(f"REVOKE UPDATE, DELETE ON {table} FROM PUBLIC;")
        op.execute(f"GRANT SELECT, INSERT ON {table} TO PUBLIC;")


def downgrade() -> None:
    # Restore full DML access (disaster recovery only)
    for table in HISTORY_TABLES:
        op.execute(f"GRANT UPDATE, DELETE ON {table} TO PUBLIC;")
