"""catalog sync and change review tables

Revision ID: 0001_catalog_sync
Revises: 
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_catalog_sync"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "category_mappings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source_category_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("source_category_name", sa.String(length=255), nullable=False),
        sa.Column("local_category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_category_mappings_local_category_id",
        "category_mappings",
        ["local_category_id"],
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source_product_id", sa.String(length=64), unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255)),
        sa.Column("description", sa.Text()),
        sa.Column("price", sa.Numeric(10, 2)),
        sa.Column("inventory_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("image_urls", postgresql.JSONB()),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        *_timestamps(),
    )
    op.create_index("ix_products_slug", "products", ["slug"])
    op.create_index("ix_products_category_id", "products", ["category_id"])

    op.create_table(
        "product_variants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("source_variant_id", sa.String(length=64), unique=True),
        sa.Column("name", sa.String(length=255)),
        sa.Column("sku", sa.String(length=100)),
        sa.Column("price", sa.Numeric(10, 2)),
        sa.Column("options", postgresql.JSONB()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_product_variants_product_id", "product_variants", ["product_id"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("trigger", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("scope_source_product_id", sa.String(length=64)),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("items_succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("detail", postgresql.JSONB()),
        sa.Column("error_message", sa.Text()),
    )
    op.create_index(
        "uq_sync_runs_single_running",
        "sync_runs",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )
    op.create_index("ix_sync_runs_completed_at", "sync_runs", ["completed_at"])

    op.create_table(
        "product_changes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("local_product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("source_product_id", sa.String(length=64), nullable=False),
        sa.Column("field_name", sa.String(length=128), nullable=False),
        sa.Column("change_type", sa.String(length=20), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("value_kind", sa.String(length=16), nullable=False),
        sa.Column("old_value", sa.Text()),
        sa.Column("new_value", sa.Text()),
        sa.Column("originating_run_id", sa.Integer(), sa.ForeignKey("sync_runs.id")),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'pending_review'"),
        ),
        sa.Column("reviewed_by", sa.String(length=150)),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("applied_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_product_changes_local_product_id", "product_changes", ["local_product_id"]
    )
    op.create_index(
        "ix_product_changes_source_product_id", "product_changes", ["source_product_id"]
    )
    op.create_index("ix_product_changes_severity", "product_changes", ["severity"])
    op.create_index(
        "ix_product_changes_status_created_at",
        "product_changes",
        ["status", "created_at"],
    )
    op.create_index(
        "uq_product_changes_pending_field",
        "product_changes",
        ["local_product_id", "field_name"],
        unique=True,
        postgresql_where=sa.text("status = 'pending_review'"),
    )

    op.create_table(
        "app_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("level", sa.String(length=20), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("message", sa.Text()),
        sa.Column("data", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_app_logs_event_type", "app_logs", ["event_type"])
    op.create_index("ix_app_logs_created_at", "app_logs", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor", sa.String(length=150), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer()),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("before_json", postgresql.JSONB()),
        sa.Column("after_json", postgresql.JSONB()),
        sa.Column("ip", sa.String(length=64)),
        sa.Column("user_agent", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("app_logs")
    op.drop_index("uq_product_changes_pending_field", table_name="product_changes")
    op.drop_table("product_changes")
    op.drop_index("uq_sync_runs_single_running", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_table("product_variants")
    op.drop_table("products")
    op.drop_table("category_mappings")
    op.drop_table("categories")
