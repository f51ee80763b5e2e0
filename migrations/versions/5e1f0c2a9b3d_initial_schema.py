"""initial schema: companies, users, roles, customers, audit

Revision ID: 5e1f0c2a9b3d
Revises:
Create Date: 2026-10-19 09:12:41.204115

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5e1f0c2a9b3d'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the tenant, account, customer and audit tables."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "companies" not in existing_tables:
        op.create_table(
            "companies",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("company_name", sa.String(255), nullable=False),
            sa.Column("host", sa.String(255), nullable=False, unique=True),
            sa.Column("support_email_address", sa.String(320), nullable=True),
            sa.Column("self_registration", sa.Boolean(), nullable=False),
            sa.Column("email_password_reset", sa.Boolean(), nullable=False),
            sa.Column("open_id_login", sa.Boolean(), nullable=False),
            sa.Column("oauth_login", sa.Boolean(), nullable=False),
            sa.Column("created", sa.DateTime(), nullable=False),
            sa.Column("modified", sa.DateTime(), nullable=False),
        )

    if "postal_addresses" not in existing_tables:
        op.create_table(
            "postal_addresses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("address_line_1", sa.String(255), nullable=True),
            sa.Column("address_line_2", sa.String(255), nullable=True),
            sa.Column("address_line_3", sa.String(255), nullable=True),
            sa.Column("postal_code", sa.String(32), nullable=True),
            sa.Column("city", sa.String(255), nullable=True),
            sa.Column("country", sa.String(255), nullable=True),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("owner_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("first_name", sa.String(128), nullable=True),
            sa.Column("last_name", sa.String(128), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("totp_secret", sa.String(64), nullable=True),
            sa.Column("certificate_alias", sa.String(64), nullable=True, unique=True),
            sa.Column("certificate_pem", sa.Text(), nullable=True),
            sa.Column("created", sa.DateTime(), nullable=False),
            sa.Column("modified", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("owner_id", "email", name="uq_users_owner_email"),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column(
                "permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
            ),
        )

    if "customers" not in existing_tables:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("owner_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
            sa.Column("first_name", sa.String(128), nullable=True),
            sa.Column("last_name", sa.String(128), nullable=True),
            sa.Column("company_name", sa.String(255), nullable=True),
            sa.Column("company_code", sa.String(64), nullable=True),
            sa.Column("email_address", sa.String(320), nullable=True),
            sa.Column("phone_number", sa.String(64), nullable=True),
            sa.Column(
                "invoicing_address_id",
                sa.Integer(),
                sa.ForeignKey("postal_addresses.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column(
                "delivery_address_id",
                sa.Integer(),
                sa.ForeignKey("postal_addresses.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("created", sa.DateTime(), nullable=False),
            sa.Column("modified", sa.DateTime(), nullable=False),
        )
        op.create_index("idx_customers_owner_id", "customers", ["owner_id"])
        op.create_index("idx_customers_sort", "customers", ["company_name", "last_name", "first_name"])

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_audit_events_company_created", "audit_events", ["company_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_audit_events_company_created", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("idx_customers_sort", table_name="customers")
    op.drop_index("idx_customers_owner_id", table_name="customers")
    op.drop_table("customers")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
    op.drop_table("postal_addresses")
    op.drop_table("companies")
