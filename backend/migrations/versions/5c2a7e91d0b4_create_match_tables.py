"""create user, match, match_move and matchmaking_ticket tables

Revision ID: 5c2a7e91d0b4
Revises:
Create Date: 2025-10-02 00:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2a7e91d0b4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'user' not in existing_tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='offline'),
            sa.Column('current_match_id', sa.Integer(), nullable=True),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)
    else:
        user_cols = {c['name'] for c in insp.get_columns('user')}
        with op.batch_alter_table('user') as batch_op:
            if 'status' not in user_cols:
                batch_op.add_column(sa.Column('status', sa.String(length=16), nullable=False, server_default='offline'))
            if 'current_match_id' not in user_cols:
                batch_op.add_column(sa.Column('current_match_id', sa.Integer(), nullable=True))

    op.create_table(
        'match',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('game_type', sa.String(length=32), nullable=False),
        sa.Column('player_one_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('player_two_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('player_one_symbol', sa.String(length=1), nullable=False),
        sa.Column('board_state', sa.Text(), nullable=False),
        sa.Column('turn_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('winner_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('reason', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
    )

    op.create_table(
        'match_move',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('match_id', sa.Integer(), sa.ForeignKey('match.id'), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('player_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('cell_index', sa.Integer(), nullable=False),
        sa.Column('symbol', sa.String(length=1), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('match_id', 'cell_index', name='uq_match_move_cell'),
        sa.UniqueConstraint('match_id', 'seq', name='uq_match_move_seq'),
    )
    op.create_index('ix_match_move_match_id', 'match_move', ['match_id'])

    op.create_table(
        'matchmaking_ticket',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('player_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False, unique=True),
        sa.Column('game_type', sa.String(length=32), nullable=False),
        sa.Column('sid', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_matchmaking_ticket_game_type', 'matchmaking_ticket', ['game_type'])
    op.create_index('ix_matchmaking_ticket_created_at', 'matchmaking_ticket', ['created_at'])

    # user <-> match reference each other; add this side once both exist
    if bind.dialect.name != 'sqlite':
        op.create_foreign_key('fk_user_current_match_id', 'user', 'match', ['current_match_id'], ['id'])


def downgrade():
    bind = op.get_bind()
    if bind.dialect.name != 'sqlite':
        op.drop_constraint('fk_user_current_match_id', 'user', type_='foreignkey')
    op.drop_index('ix_matchmaking_ticket_created_at', table_name='matchmaking_ticket')
    op.drop_index('ix_matchmaking_ticket_game_type', table_name='matchmaking_ticket')
    op.drop_table('matchmaking_ticket')
    op.drop_index('ix_match_move_match_id', table_name='match_move')
    op.drop_table('match_move')
    op.drop_table('match')
    with op.batch_alter_table('user') as batch_op:
        batch_op.drop_column('current_match_id')
        batch_op.drop_column('status')
