"""initial_framework_schema

Revision ID: 6c2e9a41d7b3
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "6c2e9a41d7b3"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(updated: bool = True):
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "pillars",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("weightage", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_pillars_id", "pillars", ["id"])

    op.create_table(
        "levers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pillar_id", sa.Integer(), sa.ForeignKey("pillars.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("weightage", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("pillar_id", "name", name="uq_lever_pillar_name"),
    )
    op.create_index("ix_levers_id", "levers", ["id"])
    op.create_index("ix_levers_pillar_id", "levers", ["pillar_id"])

    op.create_table(
        "variables",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("weightage", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("lever_id", sa.Integer(), sa.ForeignKey("levers.id"), nullable=True),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("variables.id"), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("aggregation_type", sa.String(), nullable=False, server_default="SUM"),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint(
            "(lever_id IS NULL) <> (parent_id IS NULL)", name="ck_variable_single_owner"
        ),
    )
    op.create_index("ix_variables_id", "variables", ["id"])
    op.create_index("ix_variables_lever_id", "variables", ["lever_id"])
    op.create_index("ix_variables_parent_id", "variables", ["parent_id"])

    op.create_table(
        "variable_questions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("variable_id", sa.Integer(), sa.ForeignKey("variables.id"), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("weightage", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("group_id", sa.String(), nullable=True),
        sa.Column("is_group_lead", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("evidence_description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_variable_questions_id", "variable_questions", ["id"])
    op.create_index("ix_variable_questions_variable_id", "variable_questions", ["variable_id"])

    op.create_table(
        "surveys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("allow_anonymous", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_responses", sa.Integer(), nullable=True),
        sa.Column("is_published", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("selection", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_surveys_id", "surveys", ["id"])
    op.create_index("ix_surveys_title", "surveys", ["title"])

    op.create_table(
        "survey_questions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("survey_id", sa.Integer(), sa.ForeignKey("surveys.id"), nullable=False),
        sa.Column(
            "variable_question_id",
            sa.Integer(),
            sa.ForeignKey("variable_questions.id"),
            nullable=True,
        ),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("weight", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("group_id", sa.String(), nullable=True),
        sa.Column("is_group_lead", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("evidence_description", sa.Text(), nullable=True),
    )
    op.create_index("ix_survey_questions_id", "survey_questions", ["id"])
    op.create_index("ix_survey_questions_survey_id", "survey_questions", ["survey_id"])
    op.create_index(
        "ix_survey_questions_variable_question_id", "survey_questions", ["variable_question_id"]
    )

    op.create_table(
        "responses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("survey_id", sa.Integer(), sa.ForeignKey("surveys.id"), nullable=False),
        sa.Column("respondent_id", sa.String(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_responses_id", "responses", ["id"])
    op.create_index("ix_responses_survey_id", "responses", ["survey_id"])
    op.create_index("ix_responses_respondent_id", "responses", ["respondent_id"])

    op.create_table(
        "answers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("response_id", sa.Integer(), sa.ForeignKey("responses.id"), nullable=False),
        sa.Column(
            "survey_question_id",
            sa.Integer(),
            sa.ForeignKey("survey_questions.id"),
            nullable=False,
        ),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("evidence", sa.Text(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("response_id", "survey_question_id", name="uq_answer_question"),
    )
    op.create_index("ix_answers_id", "answers", ["id"])
    op.create_index("ix_answers_response_id", "answers", ["response_id"])
    op.create_index("ix_answers_survey_question_id", "answers", ["survey_question_id"])


def downgrade() -> None:
    for table in (
        "answers",
        "responses",
        "survey_questions",
        "surveys",
        "variable_questions",
        "variables",
        "levers",
        "pillars",
    ):
        op.drop_table(table)
