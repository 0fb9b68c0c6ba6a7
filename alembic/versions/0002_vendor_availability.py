from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "vendor_availability",
        sa.Column("vendor_id", sa.String(), primary_key=True),
        sa.Column("timezone", sa.String(), nullable=False, server_default="Europe/Zurich"),
        sa.Column("min_booking_notice_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("max_booking_advance_days", sa.Integer(), nullable=False, server_default="90"),
        sa.Column("working_hours", sa.JSON(), nullable=True),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "calendar_blocks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("block_id", sa.String(), nullable=False),
        sa.Column("vendor_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("block_type", sa.String(), nullable=False, server_default="unavailable"),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_calendar_blocks_block_id", "calendar_blocks", ["block_id"], unique=True)
    op.create_index("ix_calendar_blocks_vendor_id", "calendar_blocks", ["vendor_id"], unique=False)

def downgrade():
    op.drop_index("ix_calendar_blocks_vendor_id", table_name="calendar_blocks")
    op.drop_index("ix_calendar_blocks_block_id", table_name="calendar_blocks")
    op.drop_table("calendar_blocks")
    op.drop_table("vendor_availability")
