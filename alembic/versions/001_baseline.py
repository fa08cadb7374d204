"""baseline: stamp the schema created by create_all

Revision ID: 001
Revises: None
Create Date: 2026-10-19

Fresh databases are created from the models at startup and stamped with this
revision.  Later schema changes go into new revisions on top of it.
"""

from typing import Sequence, Union

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables already exist via create_all
    pass


def downgrade() -> None:
    pass
