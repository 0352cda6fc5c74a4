"""Initial schema: listings, bookings, availability ledger, payments, payouts

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'listings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('item_type', sa.String(20), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_by', sa.String(36), nullable=False),
        sa.Column('total_capacity', sa.Integer(), nullable=True),
        sa.Column('price_per_slot', sa.Numeric(12, 2), server_default='0'),
        sa.Column('facilities', sa.JSON(), nullable=True),
        sa.Column('activities', sa.JSON(), nullable=True),
        sa.Column('approval_status', sa.String(20), server_default='pending'),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.String(36), nullable=True),
        sa.Column('is_hidden', sa.Boolean(), server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_listings_created_by', 'listings', ['created_by'])
    op.create_index('ix_listings_type_approval', 'listings', ['item_type', 'approval_status'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('listings.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('booking_type', sa.String(20), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('is_guest_booking', sa.Boolean(), server_default=sa.false()),
        sa.Column('guest_name', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('guest_phone', sa.String(20), nullable=True),
        sa.Column('slots_booked', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('visit_date', sa.Date(), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('booking_details', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending'),
        sa.Column('payment_status', sa.String(20), server_default='pending'),
        sa.Column('payment_method', sa.String(20), server_default='mpesa'),
        sa.Column('refund_required', sa.Boolean(), server_default=sa.false()),
        sa.Column('checkout_request_id', sa.String(100), nullable=True, unique=True),
        sa.Column('merchant_request_id', sa.String(100), nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        sa.Column('referrer_id', sa.String(36), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(36), nullable=True),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_bookings_referrer_id', 'bookings', ['referrer_id'])
    op.create_index('ix_bookings_item_visit', 'bookings', ['item_id', 'visit_date'])
    op.create_index('ix_bookings_status_created', 'bookings', ['status', 'payment_status', 'created_at'])

    op.create_table(
        'availability_ledger',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('item_id', sa.String(36), nullable=False),
        sa.Column('visit_date', sa.Date(), nullable=False),
        sa.Column('booked_slots', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('item_id', 'visit_date', name='uq_availability_item_date'),
    )
    op.create_index('ix_availability_ledger_item_id', 'availability_ledger', ['item_id'])

    op.create_table(
        'payment_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('checkout_request_id', sa.String(100), nullable=False, unique=True),
        sa.Column('merchant_request_id', sa.String(100), nullable=True),
        sa.Column('phone_number', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending'),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('result_desc', sa.String(500), nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_payment_requests_booking_id', 'payment_requests', ['booking_id'])

    op.create_table(
        'mpesa_callback_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('checkout_request_id', sa.String(100), nullable=True),
        sa.Column('merchant_request_id', sa.String(100), nullable=True),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('result_desc', sa.String(500), nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('status', sa.String(20), server_default='received'),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('max_attempts', sa.Integer(), server_default='5'),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('result_action', sa.String(50), nullable=True),
        sa.Column('result_booking_id', sa.String(36), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_mpesa_callback_checkout', 'mpesa_callback_logs', ['checkout_request_id'])
    op.create_index('ix_mpesa_callback_status', 'mpesa_callback_logs', ['status', 'received_at'])
    op.create_index('ix_mpesa_callback_retry', 'mpesa_callback_logs', ['status', 'next_retry_at'])

    op.create_table(
        'refund_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('checkout_request_id', sa.String(100), nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('reason', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_refund_requests_booking_id', 'refund_requests', ['booking_id'])
    op.create_index('ix_refund_requests_checkout_request_id', 'refund_requests', ['checkout_request_id'])

    op.create_table(
        'payouts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('recipient_id', sa.String(36), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending'),
        sa.Column('reference', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payouts_recipient_id', 'payouts', ['recipient_id'])

    op.create_table(
        'referral_commissions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('referrer_id', sa.String(36), nullable=False),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True, unique=True),
        sa.Column('commission_type', sa.String(20), server_default='booking'),
        sa.Column('commission_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('booking_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(20), server_default='paid'),
        sa.Column('withdrawn_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_referral_commissions_referrer', 'referral_commissions', ['referrer_id', 'status'])

    op.create_table(
        'user_roles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'role', name='uq_user_roles_user_role'),
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])


def downgrade() -> None:
    op.drop_table('user_roles')
    op.drop_table('referral_commissions')
    op.drop_table('payouts')
    op.drop_table('refund_requests')
    op.drop_table('mpesa_callback_logs')
    op.drop_table('payment_requests')
    op.drop_table('availability_ledger')
    op.drop_table('bookings')
    op.drop_table('listings')
