"""storefront schema

Revision ID: 20260301_0001
Revises: 
Create Date: 2026-03-01

"""
from alembic import op
import os

# revision identifiers, used by Alembic.
revision = '20260301_0001'
down_revision = None
branch_labels = None
depends_on = None

SCHEMA_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'db', 'schema.sql'))

# children first so foreign keys never block the drop
TABLES = (
    'wishlist_items', 'reviews', 'admin_action_log', 'order_items', 'orders',
    'stock_alerts', 'stock_reservations', 'inventory', 'products', 'users',
)


def upgrade():
    # schema.sql is idempotent (IF NOT EXISTS everywhere)
    with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
        sql = f.read()
    for stmt in [s.strip() for s in sql.split(';') if s.strip()]:
        op.execute(stmt)


def downgrade():
    for table in TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
