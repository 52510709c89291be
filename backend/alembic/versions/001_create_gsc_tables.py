"""Create Search Console connection, indexation and quota tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    existing = insp.get_table_names()

    if "gsc_connections" in existing:
        return  # Already applied (e.g. from create_all)

    if "stores" not in existing:
        op.create_table(
            "stores",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("tenant_id", sa.Uuid(), nullable=False),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("url", sa.String(2048), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stores_tenant_id", "stores", ["tenant_id"])

    op.create_table(
        "gsc_connections",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id"),
    )
    op.create_index("ix_gsc_connections_is_active", "gsc_connections", ["is_active"])

    op.create_table(
        "gsc_sites",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("connection_id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("site_url", sa.String(2048), nullable=False),
        sa.Column("permission_level", sa.String(50), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["connection_id"], ["gsc_connections.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("connection_id", "site_url", name="uq_site_per_connection"),
    )
    op.create_index("ix_gsc_sites_tenant_id", "gsc_sites", ["tenant_id"])

    op.create_table(
        "gsc_site_store_links",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("site_id", sa.Uuid(), nullable=False),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("linked_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["site_id"], ["gsc_sites.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("site_id", "store_id", name="uq_site_store_link"),
    )

    op.create_table(
        "gsc_oauth_states",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("state", sa.String(128), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("state"),
    )
    op.create_index("ix_gsc_oauth_states_expires_at", "gsc_oauth_states", ["expires_at"])

    op.create_table(
        "gsc_indexation_urls",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("site_id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("source", sa.String(20), nullable=True, server_default="manual"),
        sa.Column("lastmod", sa.String(64), nullable=True),
        sa.Column("verdict", sa.String(20), nullable=True, server_default="unknown"),
        sa.Column("coverage_state", sa.String(255), nullable=True),
        sa.Column("last_crawl_time", sa.String(64), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_inspected_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("first_seen_at", sa.DateTime(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["site_id"], ["gsc_sites.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("site_id", "url", name="uq_indexation_url_per_site"),
    )
    op.create_index("ix_gsc_indexation_urls_site_verdict", "gsc_indexation_urls", ["site_id", "verdict"])
    op.create_index("ix_gsc_indexation_urls_last_inspected_at", "gsc_indexation_urls", ["last_inspected_at"])

    op.create_table(
        "gsc_indexation_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("site_id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("auto_index_new", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("auto_index_updated", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("last_sitemap_check_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["site_id"], ["gsc_sites.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("site_id"),
    )

    op.create_table(
        "gsc_indexation_queue",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("site_id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("action", sa.String(20), nullable=True, server_default="URL_UPDATED"),
        sa.Column("status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["site_id"], ["gsc_sites.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("site_id", "url", name="uq_queue_url_per_site"),
    )
    op.create_index(
        "ix_gsc_indexation_queue_tenant_status",
        "gsc_indexation_queue",
        ["tenant_id", "status", "enqueued_at"],
    )

    op.create_table(
        "gsc_quota_counters",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False, server_default="submit"),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "kind", "day"),
    )


def downgrade() -> None:
    op.drop_table("gsc_quota_counters")
    op.drop_index("ix_gsc_indexation_queue_tenant_status", table_name="gsc_indexation_queue")
    op.drop_table("gsc_indexation_queue")
    op.drop_table("gsc_indexation_settings")
    op.drop_index("ix_gsc_indexation_urls_last_inspected_at", table_name="gsc_indexation_urls")
    op.drop_index("ix_gsc_indexation_urls_site_verdict", table_name="gsc_indexation_urls")
    op.drop_table("gsc_indexation_urls")
    op.drop_index("ix_gsc_oauth_states_expires_at", table_name="gsc_oauth_states")
    op.drop_table("gsc_oauth_states")
    op.drop_table("gsc_site_store_links")
    op.drop_index("ix_gsc_sites_tenant_id", table_name="gsc_sites")
    op.drop_table("gsc_sites")
    op.drop_index("ix_gsc_connections_is_active", table_name="gsc_connections")
    op.drop_table("gsc_connections")
