"""create crm ledger

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

from eventcrm.platform.append_only import GUARD_FUNCTION_NAME, MutationPolicy, guard_trigger_ddl


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _ws_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["workspace_id"], ["crm_workspace.id"], ondelete="RESTRICT")


IMMUTABLE_TABLES = (
    "crm_activity",
    "crm_contact_property_value",
    "crm_contact_company_association",
    "crm_deal_contact_association",
    "crm_ticket_contact_association",
    "crm_workflow_execution",
)
ARCHIVE_ONLY_TABLES = (
    "crm_contact",
    "crm_contact_property_definition",
    "crm_company",
    "crm_pipeline",
    "crm_pipeline_stage",
    "crm_deal",
    "crm_ticket_pipeline",
    "crm_ticket_stage",
    "crm_ticket",
    "crm_workflow",
    "crm_workflow_step",
)


def _install_guard_triggers() -> None:
    dialect_name = op.get_context().dialect.name
    for table_name in IMMUTABLE_TABLES:
        for statement in guard_trigger_ddl(table_name, MutationPolicy.IMMUTABLE, dialect_name):
            op.execute(statement)
    for table_name in ARCHIVE_ONLY_TABLES:
        for statement in guard_trigger_ddl(table_name, MutationPolicy.ARCHIVE_ONLY, dialect_name):
            op.execute(statement)


def upgrade() -> None:
    op.create_table(
        "crm_workspace",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_workspace_created", "crm_contact", ["workspace_id", "created_at"], unique=False)
    op.create_index("ix_crm_contact_email", "crm_contact", ["workspace_id", "email"], unique=False)

    op.create_table(
        "crm_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("subtype", sa.String(length=16), nullable=False),
        sa.Column("actor_user_id", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _ws_fk(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_activity_contact_occurred",
        "crm_activity",
        ["workspace_id", "contact_id", "occurred_at"],
        unique=False,
    )
    op.create_index("ix_crm_activity_created_type", "crm_activity", ["created_at", "type"], unique=False)

    op.create_table(
        "crm_contact_property_definition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "key", name="uq_crm_contact_property_definition_key"),
    )
    op.create_table(
        "crm_contact_property_value",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("property_key", sa.String(length=64), nullable=False),
        sa.Column("value", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _ws_fk(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_contact_property_value_latest",
        "crm_contact_property_value",
        ["workspace_id", "contact_id", "property_key", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_company",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("legal_name", sa.Text(), nullable=True),
        sa.Column("domain", sa.String(length=255), nullable=True),
        sa.Column("industry", sa.String(length=128), nullable=True),
        sa.Column("size_range", sa.String(length=32), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("country", sa.String(length=64), nullable=True),
        sa.Column("region", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_company_workspace_created", "crm_company", ["workspace_id", "created_at"], unique=False)

    op.create_table(
        "crm_contact_company_association",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_contact_company_association_pair",
        "crm_contact_company_association",
        ["workspace_id", "contact_id", "company_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_crm_contact_company_association_company",
        "crm_contact_company_association",
        ["workspace_id", "company_id"],
        unique=False,
    )

    op.create_table(
        "crm_pipeline",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "crm_pipeline_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("is_closed_won", sa.Boolean(), nullable=False),
        sa.Column("is_closed_lost", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_pipeline_stage_pipeline_id", "crm_pipeline_stage", ["pipeline_id"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=True),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_workspace_created", "crm_deal", ["workspace_id", "created_at"], unique=False)

    op.create_table(
        "crm_deal_contact_association",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_deal_contact_association_deal",
        "crm_deal_contact_association",
        ["workspace_id", "deal_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_ticket_pipeline",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "crm_ticket_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("is_closed", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_ticket_pipeline.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_ticket_stage_pipeline_id", "crm_ticket_stage", ["pipeline_id"], unique=False)

    op.create_table(
        "crm_ticket",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_ticket_pipeline.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_ticket_stage.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_ticket_workspace_created", "crm_ticket", ["workspace_id", "created_at"], unique=False)

    op.create_table(
        "crm_ticket_contact_association",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("ticket_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("is_requester", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.ForeignKeyConstraint(["ticket_id"], ["crm_ticket.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_ticket_contact_association_ticket",
        "crm_ticket_contact_association",
        ["workspace_id", "ticket_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_crm_ticket_contact_association_contact",
        "crm_ticket_contact_association",
        ["workspace_id", "contact_id"],
        unique=False,
    )

    op.create_table(
        "crm_workflow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("trigger_types", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _ws_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_workflow_workspace_enabled", "crm_workflow", ["workspace_id", "enabled"], unique=False)

    op.create_table(
        "crm_workflow_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["workflow_id"], ["crm_workflow.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_workflow_step_workflow_order",
        "crm_workflow_step",
        ["workflow_id", "order"],
        unique=False,
    )

    op.create_table(
        "crm_workflow_execution",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("activity_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
        _ws_fk(),
        sa.ForeignKeyConstraint(["workflow_id"], ["crm_workflow.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["activity_id"], ["crm_activity.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workflow_id", "activity_id", name="uq_crm_workflow_execution_workflow_activity"),
        sa.UniqueConstraint("idempotency_key", name="uq_crm_workflow_execution_idempotency_key"),
    )
    op.create_index(
        "ix_crm_workflow_execution_workflow",
        "crm_workflow_execution",
        ["workflow_id", "executed_at"],
        unique=False,
    )

    _install_guard_triggers()


def downgrade() -> None:
    op.drop_index("ix_crm_workflow_execution_workflow", table_name="crm_workflow_execution")
    op.drop_table("crm_workflow_execution")
    op.drop_index("ix_crm_workflow_step_workflow_order", table_name="crm_workflow_step")
    op.drop_table("crm_workflow_step")
    op.drop_index("ix_crm_workflow_workspace_enabled", table_name="crm_workflow")
    op.drop_table("crm_workflow")
    op.drop_index("ix_crm_ticket_contact_association_contact", table_name="crm_ticket_contact_association")
    op.drop_index("ix_crm_ticket_contact_association_ticket", table_name="crm_ticket_contact_association")
    op.drop_table("crm_ticket_contact_association")
    op.drop_index("ix_crm_ticket_workspace_created", table_name="crm_ticket")
    op.drop_table("crm_ticket")
    op.drop_index("ix_crm_ticket_stage_pipeline_id", table_name="crm_ticket_stage")
    op.drop_table("crm_ticket_stage")
    op.drop_table("crm_ticket_pipeline")
    op.drop_index("ix_crm_deal_contact_association_deal", table_name="crm_deal_contact_association")
    op.drop_table("crm_deal_contact_association")
    op.drop_index("ix_crm_deal_workspace_created", table_name="crm_deal")
    op.drop_table("crm_deal")
    op.drop_index("ix_crm_pipeline_stage_pipeline_id", table_name="crm_pipeline_stage")
    op.drop_table("crm_pipeline_stage")
    op.drop_table("crm_pipeline")
    op.drop_index("ix_crm_contact_company_association_company", table_name="crm_contact_company_association")
    op.drop_index("ix_crm_contact_company_association_pair", table_name="crm_contact_company_association")
    op.drop_table("crm_contact_company_association")
    op.drop_index("ix_crm_company_workspace_created", table_name="crm_company")
    op.drop_table("crm_company")
    op.drop_index("ix_crm_contact_property_value_latest", table_name="crm_contact_property_value")
    op.drop_table("crm_contact_property_value")
    op.drop_table("crm_contact_property_definition")
    op.drop_index("ix_crm_activity_created_type", table_name="crm_activity")
    op.drop_index("ix_crm_activity_contact_occurred", table_name="crm_activity")
    op.drop_table("crm_activity")
    op.drop_index("ix_crm_contact_email", table_name="crm_contact")
    op.drop_index("ix_crm_contact_workspace_created", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_table("crm_workspace")
    if op.get_context().dialect.name == "postgresql":
        op.execute(f"DROP FUNCTION IF EXISTS {GUARD_FUNCTION_NAME}()")
