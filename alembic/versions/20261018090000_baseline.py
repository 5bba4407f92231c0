"""baseline: projects, vendors, project_vendors, questions, survey_links, flags

Revision ID: 20261018090000
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018090000"
down_revision = None
branch_labels = None
depends_on = None


PROJECT_STATUS = sa.Enum("DRAFT", "LIVE", "COMPLETE", name="projectstatus")
QUESTION_TYPE = sa.Enum("MULTIPLE_CHOICE", "TEXT", "COUNTRY", "SCALE", name="questiontype")
LINK_TYPE = sa.Enum("TEST", "LIVE", name="linktype")
LINK_STATUS = sa.Enum("UNUSED", "IN_PROGRESS", "COMPLETED", "DISQUALIFIED", "FLAGGED", name="linkstatus")
FLAG_SEVERITY = sa.Enum("LOW", "MEDIUM", "HIGH", "CRITICAL", name="flagseverity")


def _table_exists(name: str) -> bool:
    # Idempotent: tables may already exist when the app created them on startup.
    return name in sa.inspect(op.get_bind()).get_table_names()


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    if not _table_exists("projects"):
        op.create_table(
            "projects",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("survey_url", sa.Text(), nullable=False),
            sa.Column("status", PROJECT_STATUS, nullable=False),
            sa.Column("target_completions", sa.Integer(), nullable=False),
            sa.Column("settings_json", sa.Text(), nullable=False),
            *_timestamps(),
        )

    if not _table_exists("vendors"):
        op.create_table(
            "vendors",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("contact_name", sa.String(255), nullable=True),
            sa.Column("contact_email", sa.String(255), nullable=True),
            sa.Column("settings_json", sa.Text(), nullable=False),
            *_timestamps(),
        )

    if not _table_exists("project_vendors"):
        op.create_table(
            "project_vendors",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
            sa.Column("vendor_id", sa.String(36), sa.ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False),
            sa.Column("quota", sa.Integer(), nullable=False),
            sa.Column("current_count", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.UniqueConstraint("project_id", "vendor_id", name="uq_project_vendor"),
        )
        op.create_index("ix_project_vendors_project_id", "project_vendors", ["project_id"])
        op.create_index("ix_project_vendors_vendor_id", "project_vendors", ["vendor_id"])

    if not _table_exists("questions"):
        op.create_table(
            "questions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
            sa.Column("text", sa.Text(), nullable=False),
            sa.Column("type", QUESTION_TYPE, nullable=False),
            sa.Column("options_json", sa.Text(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("is_required", sa.Boolean(), nullable=False),
            *_timestamps(),
        )
        op.create_index("ix_questions_project_id", "questions", ["project_id"])

    if not _table_exists("survey_links"):
        op.create_table(
            "survey_links",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
            sa.Column("uid", sa.String(128), nullable=False),
            sa.Column("resp_id", sa.String(128), nullable=False),
            sa.Column("vendor_id", sa.String(36), nullable=True),
            sa.Column("link_type", LINK_TYPE, nullable=False),
            sa.Column("status", LINK_STATUS, nullable=False),
            sa.Column("metadata_json", sa.Text(), nullable=False),
            *_timestamps(),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("project_id", "uid", name="uq_survey_link_project_uid"),
        )
        op.create_index("ix_survey_links_project_id", "survey_links", ["project_id"])
        op.create_index("ix_survey_links_uid", "survey_links", ["uid"])
        op.create_index("ix_survey_links_vendor_id", "survey_links", ["vendor_id"])
        op.create_index("ix_survey_links_link_type", "survey_links", ["link_type"])
        op.create_index("ix_survey_links_status", "survey_links", ["status"])

    if not _table_exists("flags"):
        op.create_table(
            "flags",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "survey_link_id", sa.String(36), sa.ForeignKey("survey_links.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("severity", FLAG_SEVERITY, nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("metadata_json", sa.Text(), nullable=False),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_flags_survey_link_id", "flags", ["survey_link_id"])
        op.create_index("ix_flags_project_id", "flags", ["project_id"])
        op.create_index("ix_flags_created_at", "flags", ["created_at"])


def downgrade() -> None:
    for name in ("flags", "survey_links", "questions", "project_vendors", "vendors", "projects"):
        if _table_exists(name):
            op.drop_table(name)
