"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000

Creates every table registered on Base.metadata: auth/RBAC, catalog, dealers,
vehicles, CRM, microsites, messaging, notifications, reports, settings and audit.

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    from app.autoexplora.models import Base

    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())
    # Idempotent: tables that already exist are left untouched.
    Base.metadata.create_all(bind=conn, checkfirst=True)
    created = sorted(set(sa.inspect(conn).get_table_names()) - existing_tables)
    if created:
        print(f"[0001] created tables: {', '.join(created)}")


def downgrade() -> None:
    from app.autoexplora.models import Base

    Base.metadata.drop_all(bind=op.get_bind(), checkfirst=True)
