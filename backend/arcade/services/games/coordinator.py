"""Match state machine for multiplayer tic-tac-toe.

Every mutating operation re-reads the match, validates against what it
read, and commits under the match's version counter. A concurrent writer
that got there first makes the commit fail; the operation then rolls back
and re-runs from a fresh read, so callers never act on stale state.
"""
import random
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from arcade import db
from arcade.models import (
    Match,
    MatchMove,
    User,
    MATCH_FINISHED,
    MATCH_ONGOING,
    PRESENCE_IN_GAME,
    PRESENCE_OFFLINE,
    PRESENCE_ONLINE,
    PRESENCE_WAITING,
    REASON_DRAW,
    REASON_RESIGNATION,
    REASON_TIMEOUT,
    REASON_WIN,
)
from . import board as rules
from .errors import (
    CellOccupied,
    DrawAlreadyOffered,
    InvalidCell,
    MatchConflict,
    MatchNotActive,
    MatchNotFound,
    NoDrawOffer,
    NotAParticipant,
    NotYourTurn,
    PlayerNotFound,
)

MOVED = 'moved'
FINISHED = 'finished'


def coin_flip() -> bool:
    return random.random() < 0.5


class DrawNegotiations:
    """Pending draw offers, at most one per match. Not persisted."""

    def __init__(self):
        self._lock = threading.Lock()
        self._offers: Dict[int, int] = {}

    def offer(self, match_id, player_id) -> bool:
        with self._lock:
            if match_id in self._offers:
                return False
            self._offers[match_id] = player_id
            return True

    def pending(self, match_id) -> Optional[int]:
        with self._lock:
            return self._offers.get(match_id)

    def take(self, match_id, offered_by) -> bool:
        """Clear the offer only if ``offered_by`` made it."""
        with self._lock:
            if self._offers.get(match_id) != offered_by:
                return False
            del self._offers[match_id]
            return True

    def discard(self, match_id):
        with self._lock:
            self._offers.pop(match_id, None)


class MatchCoordinator:
    def __init__(self, app, queue, broadcaster, connections, timers,
                 coin_flip=coin_flip, write_retries=3):
        self.app = app
        self.logger = app.logger
        self.queue = queue
        self.broadcaster = broadcaster
        self.connections = connections
        self.timers = timers
        self.coin_flip = coin_flip
        self.write_retries = max(1, int(write_retries))
        self.draws = DrawNegotiations()

    # ---- Reads ----

    def get_match(self, match_id) -> Match:
        match = db.session.get(Match, match_id, populate_existing=True)
        if match is None:
            raise MatchNotFound()
        return match

    def current_match_for(self, player_id) -> Optional[Match]:
        user = db.session.get(User, player_id)
        if user is None:
            raise PlayerNotFound()
        if user.current_match_id is None:
            return None
        return db.session.get(Match, user.current_match_id)

    # ---- Matchmaking ----

    def request_match(self, player_id, game_type, sid=None):
        result = self.queue.request_match(player_id, game_type, sid=sid, on_pair=self._open_match)
        if not result.matched:
            self._send_to_seat(result.seats[0], 'waiting', {'waiting': True})
            return result
        if result.announce:
            payload = {'match': result.match.to_dict()}
            for seat in result.seats:
                self._send_to_seat(seat, 'matchFound', payload)
            self._arm_turn_timer(result.match)
        return result

    def cancel_request(self, player_id) -> bool:
        return self.queue.cancel_request(player_id)

    def _open_match(self, game_type, waiting, requester):
        first_turn_to_one = self.coin_flip()
        first = waiting.player_id if first_turn_to_one else requester.player_id
        match = Match(
            game_type=game_type,
            player_one_id=waiting.player_id,
            player_two_id=requester.player_id,
            player_one_symbol='X' if first_turn_to_one else 'O',
            turn_id=first,
            status=MATCH_ONGOING,
        )
        match.board = rules.empty_board()
        db.session.add(match)
        db.session.flush()
        for user in User.query.filter(User.id.in_(match.players)).all():
            user.status = PRESENCE_IN_GAME
            user.current_match_id = match.id
        self.logger.info(
            f"[match-created] match={match.id} players={match.players} first={first}"
        )
        return match

    # ---- Moves ----

    def apply_move(self, match_id, player_id, cell_index) -> Match:
        def _move(match):
            self._require_ongoing(match)
            self._require_participant(match, player_id)
            if match.turn_id != player_id:
                raise NotYourTurn()
            if not rules.is_valid_cell(cell_index):
                raise InvalidCell()
            board = match.board
            if board[cell_index] is not None:
                raise CellOccupied()

            symbol = match.symbol_for(player_id)
            board[cell_index] = symbol
            match.board = board
            db.session.add(MatchMove(
                match_id=match.id,
                seq=_marked(board),
                player_id=player_id,
                cell_index=cell_index,
                symbol=symbol,
            ))
            if rules.is_winner(board, symbol):
                self._finish(match, player_id, REASON_WIN)
                return FINISHED
            if rules.is_full(board):
                self._finish(match, None, REASON_DRAW)
                return FINISHED
            match.turn_id = match.opponent_of(player_id)
            return MOVED

        match, outcome = self._mutate(match_id, _move)
        self.logger.info(f"[move] match={match.id} player={player_id} cell={cell_index} outcome={outcome}")
        if outcome == FINISHED:
            self._after_finish(match)
        else:
            self.broadcaster.to_match(match.id, 'moveMade', match.game_state())
            self._arm_turn_timer(match)
        return match

    def resign(self, match_id, player_id) -> Match:
        def _resign(match):
            self._require_ongoing(match)
            self._require_participant(match, player_id)
            self._finish(match, match.opponent_of(player_id), REASON_RESIGNATION)
            return FINISHED

        match, _ = self._mutate(match_id, _resign)
        self._after_finish(match)
        return match

    # ---- Draw negotiation ----

    def offer_draw(self, match_id, player_id):
        match = self.get_match(match_id)
        if match.status != MATCH_ONGOING:
            raise MatchNotActive('Cannot offer draw: match not active')
        self._require_participant(match, player_id)
        if not self.draws.offer(match.id, player_id):
            raise DrawAlreadyOffered()
        self.broadcaster.to_player(match.opponent_of(player_id), 'drawOffered', {'from': player_id})

    def cancel_draw(self, match_id, player_id):
        match = self.get_match(match_id)
        self._require_participant(match, player_id)
        if not self.draws.take(match.id, player_id):
            raise NoDrawOffer()
        self.broadcaster.to_player(match.opponent_of(player_id), 'drawCanceled', {})

    def accept_draw(self, match_id, player_id) -> Match:
        claimed = []

        def _accept(match):
            self._require_ongoing(match)
            self._require_participant(match, player_id)
            if not claimed:
                # The offer is consumed here so a racing cancel_draw finds nothing to cancel.
                offered_by = match.opponent_of(player_id)
                if not self.draws.take(match.id, offered_by):
                    raise NoDrawOffer()
                claimed.append(offered_by)
            self._finish(match, None, REASON_DRAW)
            return FINISHED

        try:
            match, _ = self._mutate(match_id, _accept)
        except Exception:
            for offered_by in claimed:
                self.draws.offer(match_id, offered_by)
            raise
        self._after_finish(match)
        return match

    def refuse_draw(self, match_id, player_id):
        match = self.get_match(match_id)
        self._require_participant(match, player_id)
        offered_by = match.opponent_of(player_id)
        if not self.draws.take(match.id, offered_by):
            raise NoDrawOffer()
        self.broadcaster.to_player(offered_by, 'drawRefused', {})

    # ---- Timer ----

    def handle_timeout(self, match_id, expected_turn_player_id, expected_move_count=None) -> Optional[Match]:
        """Resolve a match whose turn holder ran out of time.

        No-op when the timer is stale: the match finished, the turn moved on,
        or (when known) moves were made since the timer was armed.
        """
        def _expire(match):
            if match.status != MATCH_ONGOING or match.turn_id != expected_turn_player_id:
                return None
            if expected_move_count is not None and _marked(match.board) != expected_move_count:
                return None
            self._finish(match, match.opponent_of(expected_turn_player_id), REASON_TIMEOUT)
            return FINISHED

        try:
            match, outcome = self._mutate(match_id, _expire)
        except MatchNotFound:
            self.logger.info(f"[timer-abort] match={match_id} no longer exists")
            return None
        if outcome is None:
            self.logger.info(f"[timer-abort] match={match_id} expected_turn={expected_turn_player_id} stale")
            return None
        self._after_finish(match)
        return match

    def _arm_turn_timer(self, match):
        match_id, player_id = match.id, match.turn_id
        move_count = _marked(match.board)
        app = self.app

        def _expire():
            with app.app_context():
                self.handle_timeout(match_id, player_id, move_count)

        def _tick(time_left):
            self.broadcaster.to_match(match_id, 'timerUpdate', {
                'timeLeft': time_left,
                'currentPlayer': player_id,
            })

        self.timers.arm(match_id, player_id, _expire, _tick)

    # ---- Presence ----

    def handle_register(self, player_id, sid) -> User:
        user = db.session.get(User, player_id)
        if user is None:
            raise PlayerNotFound()
        replaced = self.connections.bind(player_id, sid)
        if user.current_match_id is not None:
            user.status = PRESENCE_IN_GAME
        elif self.queue.ticket_for(player_id) is not None:
            user.status = PRESENCE_WAITING
        else:
            user.status = PRESENCE_ONLINE
        db.session.commit()
        self.logger.info(f"[presence] player={player_id} sid={sid} status={user.status} replaced={replaced}")
        return user

    def handle_disconnect(self, sid) -> Optional[int]:
        """Mark the player offline. An ongoing match is left to its move timer."""
        player_id = self.connections.unbind(sid)
        if player_id is None:
            return None
        user = db.session.get(User, player_id)
        if user is None:
            return None
        self.queue.remove_ticket(player_id)
        user.status = PRESENCE_OFFLINE
        db.session.commit()
        self.logger.info(f"[presence] player={player_id} sid={sid} status=offline match={user.current_match_id}")
        return player_id

    # ---- Internals ----

    def _mutate(self, match_id, mutation):
        """Apply ``mutation`` to freshly read state and commit it.

        ``mutation`` validates before changing anything and returns an
        outcome, or None for a no-op.
        """
        for attempt in range(1, self.write_retries + 1):
            try:
                match = self.get_match(match_id)
                outcome = mutation(match)
                if outcome is None:
                    db.session.rollback()
                    return match, None
                db.session.commit()
                return match, outcome
            except (StaleDataError, IntegrityError):
                # Lost the race: autoflush or commit hit a newer version or
                # an already recorded cell. Re-read and validate again.
                db.session.rollback()
                self.logger.warning(f"[conflict] match={match_id} attempt={attempt}")
            except Exception:
                db.session.rollback()
                raise
        raise MatchConflict()

    def _finish(self, match, winner_id, reason):
        match.status = MATCH_FINISHED
        match.winner_id = winner_id
        match.reason = reason
        match.finished_at = datetime.now(timezone.utc)
        for user in User.query.filter(User.id.in_(match.players)).all():
            if user.current_match_id == match.id:
                user.current_match_id = None
            if user.status != PRESENCE_OFFLINE:
                user.status = PRESENCE_ONLINE

    def _after_finish(self, match):
        self.timers.cancel(match.id)
        self.draws.discard(match.id)
        self.logger.info(f"[finish] match={match.id} winner={match.winner_id} reason={match.reason}")
        self.broadcaster.to_match(match.id, 'gameFinished', {'match': match.to_dict()})

    def _require_ongoing(self, match):
        if match.status != MATCH_ONGOING:
            raise MatchNotActive('Match already finished')

    def _require_participant(self, match, player_id):
        if not match.is_participant(player_id):
            raise NotAParticipant()

    def _send_to_seat(self, seat, event, payload):
        if seat.sid:
            self.broadcaster.to_connection(seat.sid, event, payload)
        else:
            self.broadcaster.to_player(seat.player_id, event, payload)


def _marked(board) -> int:
    return sum(1 for cell in board if cell is not None)
