"""readiness_schema

Revision ID: 001_readiness
Revises:
Create Date: 2026-10-19

Adds tables and columns for day-before readiness:
- catalog_substitute (facility-scoped substitution table)
- case_readiness_cache (derived per (case, date) readiness rows)
- item_catalog: criticality, tracking flags, readiness_required, substitutable,
  expiration_warning_days
- attestation: voided_at, voided_by_user_id

The case, catalog, inventory and attestation tables belong to the scheduling
application; this revision only extends them. All DDL checks information_schema
first so the migration is idempotent, safe to run even when
Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects import postgresql

revision = '001_readiness'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

_UUID = postgresql.UUID(as_uuid=False)


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _column_exists(conn, table_name: str, column_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.columns"
            "  WHERE table_name = :tname AND column_name = :cname"
            ")"
        ),
        {"tname": table_name, "cname": column_name},
    )
    return bool(result.scalar())


_CATALOG_COLS = [
    ('criticality', sa.Column('criticality', sa.String(20), nullable=False, server_default='ROUTINE')),
    ('requires_lot_tracking', sa.Column('requires_lot_tracking', sa.Boolean, nullable=False, server_default=sa.false())),
    ('requires_serial_tracking', sa.Column('requires_serial_tracking', sa.Boolean, nullable=False, server_default=sa.false())),
    ('requires_expiration_tracking', sa.Column('requires_expiration_tracking', sa.Boolean, nullable=False, server_default=sa.false())),
    ('readiness_required', sa.Column('readiness_required', sa.Boolean, nullable=False, server_default=sa.true())),
    ('substitutable', sa.Column('substitutable', sa.Boolean, nullable=False, server_default=sa.false())),
    ('expiration_warning_days', sa.Column('expiration_warning_days', sa.Integer, nullable=True)),
]

_ATTESTATION_COLS = [
    ('voided_at', sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True)),
    ('voided_by_user_id', sa.Column('voided_by_user_id', _UUID, nullable=True)),
]


def upgrade() -> None:
    conn = op.get_bind()

    # ── item_catalog: readiness columns ───────────────────────────────────────
    if _table_exists(conn, 'item_catalog'):
        with op.batch_alter_table('item_catalog') as batch_op:
            for col_name, col_def in _CATALOG_COLS:
                if not _column_exists(conn, 'item_catalog', col_name):
                    batch_op.add_column(col_def)
                    logger.info(f"Added column item_catalog.{col_name}")
        op.execute(
            "ALTER TABLE item_catalog DROP CONSTRAINT IF EXISTS ck_item_catalog_criticality"
        )
        op.execute(
            "ALTER TABLE item_catalog ADD CONSTRAINT ck_item_catalog_criticality "
            "CHECK (criticality IN ('CRITICAL', 'IMPORTANT', 'ROUTINE'))"
        )
    else:
        logger.warning("Table item_catalog does not exist, skipping column additions")

    # ── attestation: void columns ─────────────────────────────────────────────
    if _table_exists(conn, 'attestation'):
        with op.batch_alter_table('attestation') as batch_op:
            for col_name, col_def in _ATTESTATION_COLS:
                if not _column_exists(conn, 'attestation', col_name):
                    batch_op.add_column(col_def)
                    logger.info(f"Added column attestation.{col_name}")
    else:
        logger.warning("Table attestation does not exist, skipping column additions")

    # ── catalog_substitute ────────────────────────────────────────────────────
    if not _table_exists(conn, 'catalog_substitute'):
        op.create_table(
            'catalog_substitute',
            sa.Column('id', _UUID, primary_key=True),
            sa.Column('facility_id', _UUID, sa.ForeignKey('facility.id'), nullable=False),
            sa.Column('catalog_id', _UUID, sa.ForeignKey('item_catalog.id'), nullable=False),
            sa.Column('substitute_catalog_id', _UUID, sa.ForeignKey('item_catalog.id'), nullable=False),
            sa.Column('priority', sa.Integer, nullable=False, server_default='100'),
            sa.Column('created_by_user_id', _UUID, sa.ForeignKey('app_user.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint(
                'facility_id', 'catalog_id', 'substitute_catalog_id', name='uq_catalog_substitute_pair'
            ),
            sa.CheckConstraint('catalog_id <> substitute_catalog_id', name='ck_catalog_substitute_not_self'),
        )
        logger.info("Created table: catalog_substitute")
    else:
        logger.info("Table catalog_substitute already exists, skipping create")

    # ── case_readiness_cache ──────────────────────────────────────────────────
    if not _table_exists(conn, 'case_readiness_cache'):
        op.create_table(
            'case_readiness_cache',
            sa.Column('case_id', _UUID, sa.ForeignKey('surgical_case.id'), primary_key=True),
            sa.Column('scheduled_date', sa.Date, primary_key=True),
            sa.Column('facility_id', _UUID, sa.ForeignKey('facility.id'), nullable=False),
            sa.Column('procedure_name', sa.String(255), nullable=False),
            sa.Column('surgeon_name', sa.String(255), nullable=False),
            sa.Column('readiness_state', sa.String(10), nullable=False),
            sa.Column('missing_items', postgresql.JSONB, nullable=False, server_default='[]'),
            sa.Column('total_required_items', sa.Integer, nullable=False, server_default='0'),
            sa.Column('total_verified_items', sa.Integer, nullable=False, server_default='0'),
            sa.Column('has_attestation', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('attested_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('attested_by_name', sa.String(255), nullable=True),
            sa.Column('attestation_id', _UUID, nullable=True),
            sa.Column('attestation_stale', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('has_surgeon_acknowledgment', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('surgeon_acknowledged_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('surgeon_acknowledgment_id', _UUID, nullable=True),
            sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint(
                "readiness_state IN ('GREEN', 'ORANGE', 'RED')", name='ck_readiness_cache_state'
            ),
        )
        op.create_index(
            'idx_readiness_cache_facility_date', 'case_readiness_cache', ['facility_id', 'scheduled_date']
        )
        op.create_index(
            'idx_readiness_cache_state', 'case_readiness_cache', ['facility_id', 'readiness_state']
        )
        logger.info("Created table: case_readiness_cache")
    else:
        logger.info("Table case_readiness_cache already exists, skipping create")

    if _table_exists(conn, 'surgical_case'):
        op.execute(
            "CREATE INDEX IF NOT EXISTS idx_case_scheduled_date "
            "ON surgical_case (facility_id, scheduled_date, status)"
        )


def downgrade() -> None:
    conn = op.get_bind()

    if _table_exists(conn, 'case_readiness_cache'):
        op.drop_table('case_readiness_cache')
    if _table_exists(conn, 'catalog_substitute'):
        op.drop_table('catalog_substitute')

    if _table_exists(conn, 'attestation'):
        with op.batch_alter_table('attestation') as batch_op:
            for col, _ in _ATTESTATION_COLS:
                if _column_exists(conn, 'attestation', col):
                    batch_op.drop_column(col)

    if _table_exists(conn, 'item_catalog'):
        op.execute("ALTER TABLE item_catalog DROP CONSTRAINT IF EXISTS ck_item_catalog_criticality")
        with op.batch_alter_table('item_catalog') as batch_op:
            for col, _ in _CATALOG_COLS:
                if _column_exists(conn, 'item_catalog', col):
                    batch_op.drop_column(col)
