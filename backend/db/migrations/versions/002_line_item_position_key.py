"""line_item_position_key

Re-key order line items on (order_id, variant_key, position). The old
(order_id, variant_id) key collapsed a variant that appeared twice in one
cart and let every custom sale item (variant_id NULL) bypass the constraint.

Revision ID: 002
Revises: 001
Create Date: 2025-10-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('order_line_items', sa.Column('variant_key', sa.String(128), nullable=True))
    op.add_column('order_line_items', sa.Column('position', sa.Integer(), nullable=True))

    # Existing rows get positions in insertion order within each order
    op.execute(
        """
        UPDATE order_line_items AS li
        SET position = ranked.position
        FROM (
            SELECT id, ROW_NUMBER() OVER (PARTITION BY order_id ORDER BY id) - 1 AS position
            FROM order_line_items
        ) AS ranked
        WHERE li.id = ranked.id
        """
    )
    op.execute(
        """
        UPDATE order_line_items
        SET variant_key = COALESCE(variant_id, 'custom:' || order_id || ':' || position)
        """
    )

    op.alter_column('order_line_items', 'variant_key', nullable=False)
    op.alter_column('order_line_items', 'position', nullable=False)
    op.drop_constraint('uq_line_item_order_variant', 'order_line_items', type_='unique')
    op.create_unique_constraint(
        'uq_line_item_order_variant_position',
        'order_line_items',
        ['order_id', 'variant_key', 'position'],
    )


def downgrade() -> None:
    # Duplicate variants within one order cannot be represented under the old key
    op.execute(
        """
        DELETE FROM order_line_items AS li
        USING order_line_items AS keep
        WHERE li.order_id = keep.order_id
          AND li.variant_id = keep.variant_id
          AND li.id > keep.id
        """
    )
    op.drop_constraint('uq_line_item_order_variant_position', 'order_line_items', type_='unique')
    op.create_unique_constraint('uq_line_item_order_variant', 'order_line_items', ['order_id', 'variant_id'])
    op.drop_column('order_line_items', 'position')
    op.drop_column('order_line_items', 'variant_key')
