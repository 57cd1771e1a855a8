from arcade import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
import json
from arcade.services.games.board import empty_board, other_symbol

PRESENCE_OFFLINE = 'offline'
PRESENCE_ONLINE = 'online'
PRESENCE_WAITING = 'waiting'
PRESENCE_IN_GAME = 'in-game'

MATCH_ONGOING = 'ongoing'
MATCH_FINISHED = 'finished'

REASON_WIN = 'win'
REASON_DRAW = 'draw'
REASON_TIMEOUT = 'timeout'
REASON_RESIGNATION = 'resignation'


def _utcnow():
    return datetime.now(timezone.utc)


def _isoformat(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PRESENCE_OFFLINE) # offline, online, waiting, in-game
    current_match_id = db.Column(
        db.Integer,
        db.ForeignKey('match.id', name='fk_user_current_match_id', use_alter=True),
        nullable=True,
    )

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'status': self.status,
            'current_match_id': self.current_match_id,
        }


class MatchmakingTicket(db.Model):
    """A player's pending request for an opponent."""
    __tablename__ = 'matchmaking_ticket'
    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    game_type = db.Column(db.String(32), nullable=False, index=True)
    sid = db.Column(db.String(64), nullable=True)  # requesting socket connection, if any
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'player_id': self.player_id,
            'game': self.game_type,
            'created_at': _isoformat(self.created_at),
        }


class MatchMove(db.Model):
    __tablename__ = 'match_move'
    __table_args__ = (
        db.UniqueConstraint('match_id', 'cell_index', name='uq_match_move_cell'),
        db.UniqueConstraint('match_id', 'seq', name='uq_match_move_seq'),
    )
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False, index=True)
    seq = db.Column(db.Integer, nullable=False)
    player_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    cell_index = db.Column(db.Integer, nullable=False)
    symbol = db.Column(db.String(1), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            'player': self.player_id,
            'index': self.cell_index,
            'symbol': self.symbol,
            'created_at': _isoformat(self.created_at),
        }


class Match(db.Model):
    __tablename__ = 'match'
    id = db.Column(db.Integer, primary_key=True)
    game_type = db.Column(db.String(32), nullable=False)
    player_one_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    player_two_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    player_one_symbol = db.Column(db.String(1), nullable=False)
    board_state = db.Column(db.Text, nullable=False)  # JSON-encoded list of 9 cells
    turn_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=MATCH_ONGOING) # ongoing, finished
    winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    reason = db.Column(db.String(16), nullable=False, default='') # win, draw, timeout, resignation
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    finished_at = db.Column(db.DateTime, nullable=True)
    version = db.Column(db.Integer, nullable=False)

    player_one = db.relationship('User', foreign_keys=[player_one_id])
    player_two = db.relationship('User', foreign_keys=[player_two_id])
    moves = db.relationship('MatchMove', order_by='MatchMove.seq', lazy='select')

    # Every UPDATE is checked against the version read; a concurrent writer
    # surfaces as StaleDataError on commit.
    __mapper_args__ = {'version_id_col': version}

    @property
    def board(self):
        return json.loads(self.board_state) if self.board_state else empty_board()

    @board.setter
    def board(self, cells):
        self.board_state = json.dumps(list(cells))

    @property
    def players(self):
        return [self.player_one_id, self.player_two_id]

    def is_participant(self, player_id):
        return player_id in self.players

    def opponent_of(self, player_id):
        if player_id == self.player_one_id:
            return self.player_two_id
        if player_id == self.player_two_id:
            return self.player_one_id
        return None

    def symbol_for(self, player_id):
        if player_id == self.player_one_id:
            return self.player_one_symbol
        if player_id == self.player_two_id:
            return other_symbol(self.player_one_symbol)
        return None

    def game_state(self):
        return {
            'board': self.board,
            'turn': self.turn_id,
            'moves': [m.to_dict() for m in self.moves],
        }

    def to_dict(self):
        player_symbols = []
        for user in (self.player_one, self.player_two):
            player_symbols.append({
                'player': user.id,
                'symbol': self.symbol_for(user.id),
                'username': user.username,
            })
        return {
            'id': self.id,
            'game': self.game_type,
            'players': self.players,
            'player_symbols': player_symbols,
            'game_state': self.game_state(),
            'result': {
                'status': self.status,
                'winner': self.winner_id,
                'reason': self.reason,
            },
            'created_at': _isoformat(self.created_at),
            'finished_at': _isoformat(self.finished_at),
        }
