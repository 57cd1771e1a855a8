from collections import namedtuple
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError

from arcade import db
from arcade.models import (
    Match,
    MatchmakingTicket,
    User,
    PRESENCE_ONLINE,
    PRESENCE_WAITING,
)
from .errors import AlreadyInMatch, AlreadyQueued, PlayerNotFound, UnknownGameType

# A player taking part in a pairing and the connection that asked for it
Seat = namedtuple('Seat', ['player_id', 'sid'])


@dataclass
class MatchRequest:
    matched: bool
    match: Optional[Match] = None
    seats: Tuple[Seat, ...] = ()
    # False when a concurrent requester created the match and already announced it
    announce: bool = True


class MatchmakingQueue:
    """FIFO waiting list per game type, backed by the matchmaking_ticket table.

    Pairing never trusts a read: a ticket is only consumed by a conditional
    delete whose row count is checked, and the partner's ticket, the
    requester's ticket and the new match are committed together.
    """

    def __init__(self, game_types, claim_retries=3, logger=None):
        self.game_types = tuple(game_types)
        self.claim_retries = max(1, int(claim_retries))
        self.logger = logger

    def ticket_for(self, player_id) -> Optional[MatchmakingTicket]:
        return MatchmakingTicket.query.filter_by(player_id=player_id).first()

    def request_match(self, player_id, game_type, sid=None, on_pair=None) -> MatchRequest:
        """Pair the player with the oldest waiting opponent or enqueue them.

        ``on_pair(game_type, waiting_seat, requester_seat)`` must add the new match to the
        session without committing; it runs inside the claiming transaction.
        """
        if game_type not in self.game_types:
            raise UnknownGameType(f"Unknown game type: {game_type}")
        user = db.session.get(User, player_id)
        if user is None:
            raise PlayerNotFound()
        if user.current_match_id is not None:
            raise AlreadyInMatch()
        if self.ticket_for(player_id) is not None:
            raise AlreadyQueued()

        own = MatchmakingTicket(player_id=player_id, game_type=game_type, sid=sid)
        db.session.add(own)
        user.status = PRESENCE_WAITING
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise AlreadyQueued()
        own_id = own.id
        requester = Seat(player_id, sid)

        for attempt in range(1, self.claim_retries + 1):
            partner = (
                MatchmakingTicket.query
                .filter(MatchmakingTicket.game_type == game_type,
                        MatchmakingTicket.player_id != player_id)
                .order_by(MatchmakingTicket.created_at, MatchmakingTicket.id)
                .first()
            )
            if partner is None:
                break
            waiting = Seat(partner.player_id, partner.sid)
            try:
                claimed = self._claim(partner.id) and self._claim(own_id)
                if claimed:
                    match = on_pair(game_type, waiting, requester)
                    db.session.commit()
                    return MatchRequest(matched=True, match=match, seats=(waiting, requester))
                db.session.rollback()
            except OperationalError:
                # e.g. two requesters claiming each other's rows deadlocked
                db.session.rollback()
            self._log(f"[claim-lost] player={player_id} partner={waiting.player_id} attempt={attempt}")
            paired = self._paired_elsewhere(player_id, own_id)
            if paired is not None:
                return paired

        paired = self._paired_elsewhere(player_id, own_id)
        if paired is not None:
            return paired
        self._log(f"[queue-wait] player={player_id} game={game_type}")
        return MatchRequest(matched=False, seats=(requester,))

    def cancel_request(self, player_id) -> bool:
        """Drop the player's ticket; no-op when they hold none."""
        removed = self.remove_ticket(player_id)
        if removed:
            user = db.session.get(User, player_id)
            if user is not None and user.status == PRESENCE_WAITING:
                user.status = PRESENCE_ONLINE
            self._log(f"[queue-cancel] player={player_id}")
        db.session.commit()
        return removed

    def remove_ticket(self, player_id) -> bool:
        """Delete the player's ticket inside the current transaction."""
        return MatchmakingTicket.query.filter_by(player_id=player_id).delete(synchronize_session=False) > 0

    def _claim(self, ticket_id) -> bool:
        return MatchmakingTicket.query.filter_by(id=ticket_id).delete(synchronize_session=False) == 1

    def _paired_elsewhere(self, player_id, own_id) -> Optional[MatchRequest]:
        # Our own ticket disappearing means another requester claimed it and
        # committed the match together with our presence change.
        if db.session.get(MatchmakingTicket, own_id) is not None:
            return None
        user = db.session.get(User, player_id, populate_existing=True)
        if user is None or user.current_match_id is None:
            return None
        match = db.session.get(Match, user.current_match_id)
        return MatchRequest(matched=True, match=match, announce=False)

    def _log(self, message):
        if self.logger is not None:
            self.logger.info(message)
