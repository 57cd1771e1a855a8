"""Soft, user-facing rejections raised by the matchmaking and match services.

None of these are fatal: socket handlers turn them into an ``errorMessage``
for the acting connection, HTTP routes into a JSON error body.
"""


class GameError(Exception):
    status_code = 400
    message = 'Request rejected'

    def __init__(self, message=None):
        super().__init__(message or self.message)

    def to_dict(self):
        return {'error': str(self)}


class PlayerNotFound(GameError):
    status_code = 404
    message = 'Player not found'


class UnknownGameType(GameError):
    message = 'Unknown game type'


class AlreadyQueued(GameError):
    status_code = 409
    message = 'Already in queue'


class AlreadyInMatch(GameError):
    status_code = 409
    message = 'Already in a match'


class MatchNotFound(GameError):
    status_code = 404
    message = 'Match not found'


class MatchNotActive(GameError):
    message = 'Match is not active'


class NotAParticipant(GameError):
    status_code = 403
    message = 'You are not part of this match'


class NotYourTurn(GameError):
    message = 'Not your turn'


class InvalidCell(GameError):
    message = 'Invalid index'


class CellOccupied(GameError):
    message = 'Cell already taken'


class DrawAlreadyOffered(GameError):
    status_code = 409
    message = 'A draw offer is already pending'


class NoDrawOffer(GameError):
    message = 'No draw offer pending'


class NotRegistered(GameError):
    status_code = 401
    message = 'Connection is not registered to a player'


class MatchConflict(GameError):
    status_code = 409
    message = 'Match was updated concurrently, please retry'
