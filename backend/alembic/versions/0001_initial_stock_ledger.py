"""Initial stock ledger tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Items (raw materials with drums, finished goods with per-location stock),
the stock_movements ledger, production batches and the activity log.
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


MOVEMENT_TYPE = sa.Enum("IN", "OUT", "ADJUSTMENT", name="movementtype")


def upgrade() -> None:
    # ── Items ────────────────────────────────────────────────
    op.create_table(
        "raw_materials",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(20), nullable=True),
        sa.Column("reorder_threshold", sa.Float(), nullable=True, server_default="0"),
        sa.Column("current_stock", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_raw_materials_code", "raw_materials", ["code"], unique=True)

    op.create_table(
        "drums",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("raw_material_id", sa.String(36), sa.ForeignKey("raw_materials.id"), nullable=False),
        sa.Column("label", sa.String(100), nullable=False),
        sa.Column("current_quantity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.UniqueConstraint("raw_material_id", "label", name="uq_drum_label_per_material"),
    )
    op.create_index("ix_drums_raw_material_id", "drums", ["raw_material_id"])

    op.create_table(
        "finished_goods",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(20), nullable=True),
        sa.Column("current_stock", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_finished_goods_name", "finished_goods", ["name"], unique=True)

    op.create_table(
        "locations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )

    op.create_table(
        "finished_good_stocks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("finished_good_id", sa.String(36), sa.ForeignKey("finished_goods.id"), nullable=False),
        sa.Column("location_id", sa.String(36), sa.ForeignKey("locations.id"), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.UniqueConstraint("finished_good_id", "location_id", name="uq_finished_good_location"),
    )
    op.create_index("ix_finished_good_stocks_finished_good_id", "finished_good_stocks", ["finished_good_id"])
    op.create_index("ix_finished_good_stocks_location_id", "finished_good_stocks", ["location_id"])

    # ── Production ───────────────────────────────────────────
    op.create_table(
        "batches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("batch_date", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_batches_code", "batches", ["code"], unique=True)
    op.create_index("ix_batches_batch_date", "batches", ["batch_date"])

    op.create_table(
        "batch_usages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("raw_material_id", sa.String(36), sa.ForeignKey("raw_materials.id"), nullable=False),
        sa.Column("drum_id", sa.String(36), sa.ForeignKey("drums.id"), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
    )
    op.create_index("ix_batch_usages_batch_id", "batch_usages", ["batch_id"])

    op.create_table(
        "batch_finished_goods",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("finished_good_id", sa.String(36), sa.ForeignKey("finished_goods.id"), nullable=False),
        sa.Column("location_id", sa.String(36), sa.ForeignKey("locations.id"), nullable=True),
        sa.Column("quantity", sa.Float(), nullable=False),
    )
    op.create_index("ix_batch_finished_goods_batch_id", "batch_finished_goods", ["batch_id"])

    # ── Ledger ───────────────────────────────────────────────
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("kind", MOVEMENT_TYPE, nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("movement_date", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("raw_material_id", sa.String(36), sa.ForeignKey("raw_materials.id"), nullable=True),
        sa.Column("finished_good_id", sa.String(36), sa.ForeignKey("finished_goods.id"), nullable=True),
        sa.Column("drum_id", sa.String(36), sa.ForeignKey("drums.id"), nullable=True),
        sa.Column("location_id", sa.String(36), sa.ForeignKey("locations.id"), nullable=True),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.CheckConstraint(
            "(raw_material_id IS NULL) <> (finished_good_id IS NULL)",
            name="ck_movement_one_item",
        ),
    )
    op.create_index("ix_stock_movements_movement_date", "stock_movements", ["movement_date"])
    op.create_index("ix_stock_movements_rm_date", "stock_movements", ["raw_material_id", "movement_date"])
    op.create_index("ix_stock_movements_fg_date", "stock_movements", ["finished_good_id", "movement_date"])
    op.create_index("ix_stock_movements_drum_id", "stock_movements", ["drum_id"])
    op.create_index("ix_stock_movements_location_id", "stock_movements", ["location_id"])
    op.create_index("ix_stock_movements_batch_id", "stock_movements", ["batch_id"])
    op.create_index("ix_stock_movements_created_at", "stock_movements", ["created_at"])

    # ── Audit ────────────────────────────────────────────────
    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("actor", sa.String(100), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=True),
        sa.Column("entity_code", sa.String(100), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_actor", "activity_logs", ["actor"])
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_entity_type", "activity_logs", ["entity_type"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("stock_movements")
    op.drop_table("batch_finished_goods")
    op.drop_table("batch_usages")
    op.drop_table("batches")
    op.drop_table("finished_good_stocks")
    op.drop_table("locations")
    op.drop_table("finished_goods")
    op.drop_table("drums")
    op.drop_table("raw_materials")
    MOVEMENT_TYPE.drop(op.get_bind(), checkfirst=True)
