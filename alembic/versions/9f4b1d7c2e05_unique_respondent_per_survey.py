"""unique_respondent_per_survey

Revision ID: 9f4b1d7c2e05
Revises: 6c2e9a41d7b3
Create Date: 2026-10-20 00:00:00.000000

"""

from typing import Sequence, Union
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "9f4b1d7c2e05"
down_revision: Union[str, None] = "6c2e9a41d7b3"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Anonymous responses (respondent_id NULL) stay unconstrained.
    with op.batch_alter_table("responses") as batch_op:
        batch_op.create_unique_constraint(
            "uq_response_survey_respondent", ["survey_id", "respondent_id"]
        )


def downgrade() -> None:
    with op.batch_alter_table("responses") as batch_op:
        batch_op.drop_constraint("uq_response_survey_respondent", type_="unique")
