"""listing search fields and soft delete

Revision ID: 0003_listing_details
Revises: 0002_messaging_notifications
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0003_listing_details"
down_revision = "0002_messaging_notifications"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("listings") as batch:
        batch.add_column(sa.Column("property_type", sa.String(length=64), nullable=False, server_default=""))
        batch.add_column(sa.Column("category", sa.String(length=32), nullable=False, server_default=""))
        batch.add_column(sa.Column("bedrooms", sa.Integer(), nullable=True))
        batch.add_column(sa.Column("latitude", sa.Float(), nullable=True))
        batch.add_column(sa.Column("longitude", sa.Float(), nullable=True))
        batch.add_column(sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()))
    op.create_index("ix_listings_property_type", "listings", ["property_type"])
    op.create_index("ix_listings_category", "listings", ["category"])
    op.create_index("ix_listings_deleted", "listings", ["deleted"])


def downgrade() -> None:
    op.drop_index("ix_listings_deleted", table_name="listings")
    op.drop_index("ix_listings_category", table_name="listings")
    op.drop_index("ix_listings_property_type", table_name="listings")
    with op.batch_alter_table("listings") as batch:
        batch.drop_column("deleted")
        batch.drop_column("longitude")
        batch.drop_column("latitude")
        batch.drop_column("bedrooms")
        batch.drop_column("category")
        batch.drop_column("property_type")
