"""Registration counters, visitors, registrations and exhibition mirror"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "001_registration_integrity"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "exhibitions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("tagline", sa.String(length=255), nullable=True),
        sa.Column("current_registrations_count", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "registration_counters",
        sa.Column("scope_key", sa.String(length=64), primary_key=True),
        sa.Column("date_bucket", sa.String(length=8), primary_key=True),
        sa.Column("last_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("last_seq >= 0", name="ck_registration_counters_last_seq"),
    )

    op.create_table(
        "global_visitors",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("company", sa.String(length=255), nullable=True),
        sa.Column("designation", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("state", sa.String(length=128), nullable=True),
        sa.Column("pincode", sa.String(length=16), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("attributes", sa.JSON(), nullable=False),
        sa.Column("total_registrations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_registration_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registered_exhibitions", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        # NULL phones are not compared by UNIQUE, so anonymous visitors coexist.
        sa.UniqueConstraint("phone", name="uq_global_visitors_phone"),
    )
    op.create_index("ix_global_visitors_email", "global_visitors", ["email"])
    op.create_index("ix_global_visitors_created_at", "global_visitors", ["created_at"])

    op.create_table(
        "registrations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("registration_number", sa.String(length=96), nullable=False),
        sa.Column("visitor_id", sa.String(length=36), nullable=False),
        sa.Column("exhibition_id", sa.String(length=64), nullable=False),
        sa.Column("registration_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("registration_category", sa.String(length=128), nullable=False),
        sa.Column("selected_interests", sa.JSON(), nullable=False),
        sa.Column("custom_field_data", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "registered",
                "confirmed",
                "checked_in",
                "cancelled",
                "waitlisted",
                name="registration_status",
                native_enum=False,
            ),
            nullable=False,
            server_default="registered",
        ),
        sa.Column(
            "registration_source",
            sa.Enum("online", "onsite", "admin", name="registration_source", native_enum=False),
            nullable=False,
            server_default="online",
        ),
        sa.Column(
            "referral_source",
            sa.Enum("direct", "exhibitor", name="referral_source", native_enum=False),
            nullable=False,
            server_default="direct",
        ),
        sa.Column("exhibitor_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("registration_number", name="uq_registrations_registration_number"),
    )
    op.create_index("ix_registrations_exhibition_status", "registrations", ["exhibition_id", "status"])
    op.create_index("ix_registrations_visitor_exhibition", "registrations", ["visitor_id", "exhibition_id"])


def downgrade() -> None:
    op.drop_index("ix_registrations_visitor_exhibition", table_name="registrations")
    op.drop_index("ix_registrations_exhibition_status", table_name="registrations")
    op.drop_table("registrations")
    op.drop_index("ix_global_visitors_created_at", table_name="global_visitors")
    op.drop_index("ix_global_visitors_email", table_name="global_visitors")
    op.drop_table("global_visitors")
    op.drop_table("registration_counters")
    op.drop_table("exhibitions")
