"""Create funnel tables (flows, nodes, edges, purchases, visits, pending identities)

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 10:00:00.000000

WHAT:
    Creates the funnel schema:
    - company_flows: one funnel per row, initial product + confirmation URL
    - flow_nodes: upsell/downsell/cross_sell offer steps
    - flow_edges: accept/decline transitions between steps
    - flow_purchases: one row per successful charge
    - flow_visits: page views for conversion reporting
    - pending_identities: webhook-populated checkout -> member mapping

WHY:
    Initial schema for the funnel engine. Edges cascade with both of their
    endpoint nodes so deleting an offer never leaves dangling transitions.

REFERENCES:
    - xperience/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


NODE_TYPES = ('upsell', 'downsell', 'cross_sell')


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Flow graph
    # =========================================================================
    op.create_table(
        'company_flows',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('initial_product_plan_id', sa.String(), nullable=True),
        sa.Column('initial_product_name', sa.String(), nullable=True),
        sa.Column('initial_product_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('confirmation_page_url', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_company_flows_company_id', 'company_flows', ['company_id'])

    op.create_table(
        'flow_nodes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('flow_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('company_flows.id', ondelete='CASCADE'), nullable=False),
        sa.Column('node_type', sa.Enum(*NODE_TYPES, name='nodetypeenum'), nullable=False),
        sa.Column('plan_id', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('original_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('redirect_url', sa.String(), nullable=True),
        sa.Column('order_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    # order_index is unique only within (flow, node_type); no unique constraint
    op.create_index('ix_flow_nodes_flow_type_order', 'flow_nodes', ['flow_id', 'node_type', 'order_index'])

    op.create_table(
        'flow_edges',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('flow_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('company_flows.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_node_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('flow_nodes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.Enum('accept', 'decline', name='edgeactionenum'), nullable=False),
        sa.Column('target_type', sa.Enum('node', 'confirmation', 'external_url', name='edgetargetenum'),
                  nullable=False),
        sa.Column('to_node_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('flow_nodes.id', ondelete='CASCADE'), nullable=True),
        sa.Column('target_url', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_flow_edges_flow_from_action', 'flow_edges', ['flow_id', 'from_node_id', 'action'])

    # =========================================================================
    # STEP 2: Funnel activity
    # =========================================================================
    op.create_table(
        'flow_purchases',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('flow_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('company_flows.id', ondelete='CASCADE'), nullable=False),
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('member_id', sa.String(), nullable=False),
        sa.Column('plan_id', sa.String(), nullable=False),
        sa.Column('purchase_type', sa.Enum('initial', *NODE_TYPES, name='purchasetypeenum'), nullable=False),
        # No FK: purchases outlive node edits
        sa.Column('node_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(), nullable=False, server_default='usd'),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('payment_id', sa.String(), nullable=True),
        sa.Column('purchased_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_flow_purchases_member_flow_time', 'flow_purchases', ['member_id', 'flow_id', 'purchased_at'])
    op.create_index('ix_flow_purchases_session', 'flow_purchases', ['session_id'])

    op.create_table(
        'flow_visits',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('flow_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('company_flows.id', ondelete='CASCADE'), nullable=False),
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('page_type', sa.Enum('checkout', *NODE_TYPES, 'confirmation', name='pagetypeenum'), nullable=False),
        sa.Column('node_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('referrer', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('visited_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # =========================================================================
    # STEP 3: Webhook-populated identities
    # =========================================================================
    # WHAT: checkout configuration -> member mapping written by POST /whop/webhook
    # WHY: Funnel pages poll this until Whop confirms the saved card
    op.create_table(
        'pending_identities',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('checkout_config_id', sa.String(), nullable=False),
        sa.Column('member_id', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('setup_intent_id', sa.String(), nullable=True),
        sa.Column('payment_method_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_pending_identities_checkout_config_id', 'pending_identities', ['checkout_config_id'], unique=True)
    op.create_index('ix_pending_identities_email', 'pending_identities', ['email'])
    op.create_index('ix_pending_identities_setup_intent_id', 'pending_identities', ['setup_intent_id'])


def downgrade() -> None:
    op.drop_table('pending_identities')
    op.drop_table('flow_visits')
    op.drop_table('flow_purchases')
    op.drop_table('flow_edges')
    op.drop_table('flow_nodes')
    op.drop_table('company_flows')

    for enum_name in ('pagetypeenum', 'purchasetypeenum', 'edgetargetenum', 'edgeactionenum', 'nodetypeenum'):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
