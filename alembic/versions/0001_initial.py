"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


LIVE_HOLD = sa.text("state IN ('HELD', 'CONFIRMED')")


def upgrade():
    op.create_table('bus_layouts',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('layout_name', sa.String(length=128), nullable=False),
        sa.Column('seater_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('sleeper_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('layout_name', name='bus_layouts_layout_name_key'),
    )

    op.create_table('layout_seats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('layout_id', sa.String(length=36), nullable=False),
        sa.Column('seat_key', sa.String(length=64), nullable=False),
        sa.Column('seat_number', sa.String(length=32), nullable=False),
        sa.Column('deck', sa.String(length=8), nullable=False, server_default='LOWER'),
        sa.Column('category', sa.String(length=16), nullable=False, server_default='SEAT'),
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False),
        sa.ForeignKeyConstraint(['layout_id'], ['bus_layouts.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('layout_id', 'seat_key', name='uq_layout_seat_key'),
    )
    op.create_index('ix_layout_seats_layout_id', 'layout_seats', ['layout_id'], unique=False)

    op.create_table('vehicles',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('vendor_id', sa.String(length=64), nullable=False),
        sa.Column('vehicle_name', sa.String(length=128), nullable=False),
        sa.Column('vehicle_number', sa.String(length=64), nullable=False),
        sa.Column('layout_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['layout_id'], ['bus_layouts.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_vehicles_vendor_id', 'vehicles', ['vendor_id'], unique=False)
    op.create_index('ix_vehicles_vehicle_number', 'vehicles', ['vehicle_number'], unique=True)
    op.create_index('ix_vehicles_layout_id', 'vehicles', ['layout_id'], unique=False)

    op.create_table('bookings',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('vendor_id', sa.String(length=64), nullable=False),
        sa.Column('vehicle_id', sa.String(length=36), nullable=False),
        sa.Column('service_date', sa.Date(), nullable=False),
        sa.Column('trip_instance_id', sa.String(length=80), nullable=False),
        sa.Column('route_id', sa.String(length=64), nullable=True),
        sa.Column('boarding_point_id', sa.String(length=64), nullable=False),
        sa.Column('dropping_point_id', sa.String(length=64), nullable=False),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('final_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('payment_method', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='CREATED'),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='PENDING'),
        sa.Column('payment_intent_ref', sa.String(length=255), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=512), nullable=True),
        sa.Column('cancellation_charge', sa.Numeric(10, 2), nullable=True),
        sa.Column('refund_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payment_intent_ref', name='bookings_payment_intent_ref_key'),
    )
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'], unique=False)
    op.create_index('ix_bookings_vendor_id', 'bookings', ['vendor_id'], unique=False)
    op.create_index('ix_bookings_vehicle_id', 'bookings', ['vehicle_id'], unique=False)
    op.create_index('ix_bookings_service_date', 'bookings', ['service_date'], unique=False)
    op.create_index('ix_bookings_trip_instance_id', 'bookings', ['trip_instance_id'], unique=False)
    op.create_index('ix_bookings_status', 'bookings', ['status'], unique=False)
    op.create_index('ix_bookings_payment_status', 'bookings', ['payment_status'], unique=False)

    op.create_table('seat_holds',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('trip_instance_id', sa.String(length=80), nullable=False),
        sa.Column('vehicle_id', sa.String(length=36), nullable=False),
        sa.Column('service_date', sa.Date(), nullable=False),
        sa.Column('seat_key', sa.String(length=64), nullable=False),
        sa.Column('booking_id', sa.String(length=36), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('state', sa.String(length=16), nullable=False, server_default='HELD'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_seat_holds_booking_id', 'seat_holds', ['booking_id'], unique=False)
    # one live holder per seat of a trip instance; released rows are kept as history
    op.create_index(
        'uq_seat_holds_active_seat',
        'seat_holds',
        ['trip_instance_id', 'seat_key'],
        unique=True,
        postgresql_where=LIVE_HOLD,
        sqlite_where=LIVE_HOLD,
    )
    op.create_index('ix_seat_holds_trip_state', 'seat_holds', ['trip_instance_id', 'state'], unique=False)
    op.create_index('ix_seat_holds_state_expires', 'seat_holds', ['state', 'expires_at'], unique=False)

    op.create_table('payment_intents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.String(length=36), nullable=True),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('provider_ref', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('provider_ref', name='payment_intents_provider_ref_key'),
    )
    op.create_index('ix_payment_intents_booking_id', 'payment_intents', ['booking_id'], unique=False)
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('object_type', sa.String(length=128), nullable=True),
        sa.Column('object_id', sa.String(length=128), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'], unique=False)


def downgrade():
    op.drop_index('ix_audit_logs_actor_id', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_payment_intents_status', table_name='payment_intents')
    op.drop_index('ix_payment_intents_booking_id', table_name='payment_intents')
    op.drop_table('payment_intents')
    op.drop_index('ix_seat_holds_state_expires', table_name='seat_holds')
    op.drop_index('ix_seat_holds_trip_state', table_name='seat_holds')
    op.drop_index('uq_seat_holds_active_seat', table_name='seat_holds')
    op.drop_index('ix_seat_holds_booking_id', table_name='seat_holds')
    op.drop_table('seat_holds')
    for ix in ('payment_status', 'status', 'trip_instance_id', 'service_date', 'vehicle_id', 'vendor_id', 'user_id'):
        op.drop_index(f'ix_bookings_{ix}', table_name='bookings')
    op.drop_table('bookings')
    op.drop_index('ix_vehicles_layout_id', table_name='vehicles')
    op.drop_index('ix_vehicles_vehicle_number', table_name='vehicles')
    op.drop_index('ix_vehicles_vendor_id', table_name='vehicles')
    op.drop_table('vehicles')
    op.drop_index('ix_layout_seats_layout_id', table_name='layout_seats')
    op.drop_table('layout_seats')
    op.drop_table('bus_layouts')
