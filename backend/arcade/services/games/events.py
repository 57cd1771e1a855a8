"""Inbound realtime payloads, one schema per event name.

Clients have historically sent camelCase (``matchId``) and the legacy names
``userId``/``index``; all spellings are accepted and normalized here before
anything reaches the coordinator. The ``from`` key legacy clients put on
draw events is a display name and is dropped with the other unknown keys.
"""
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _player_id(**kwargs):
    return Field(validation_alias=AliasChoices('player_id', 'playerId', 'userId'), **kwargs)


def _match_id():
    return Field(validation_alias=AliasChoices('match_id', 'matchId'))


class EventPayload(BaseModel):
    model_config = ConfigDict(extra='ignore')


class Register(EventPayload):
    player_id: int = _player_id()


class RequestMatch(EventPayload):
    player_id: Optional[int] = _player_id(default=None)
    game: str = Field(default='tictactoe', validation_alias=AliasChoices('game', 'game_type', 'gameType'))


class CancelRequest(EventPayload):
    player_id: Optional[int] = _player_id(default=None)


class JoinMatchRoom(EventPayload):
    match_id: int = _match_id()
    player_id: Optional[int] = _player_id(default=None)


class MakeMove(EventPayload):
    match_id: int = _match_id()
    player_id: Optional[int] = _player_id(default=None)
    cell_index: int = Field(validation_alias=AliasChoices('cell_index', 'cellIndex', 'index'))


class MatchAction(EventPayload):
    """offerDraw, cancelDraw, acceptDraw, refuseDraw and resign."""
    match_id: int = _match_id()
    player_id: Optional[int] = _player_id(default=None)


EVENT_SCHEMAS = {
    'register': Register,
    'requestMatch': RequestMatch,
    'cancelRequest': CancelRequest,
    'joinMatchRoom': JoinMatchRoom,
    'makeMove': MakeMove,
    'offerDraw': MatchAction,
    'cancelDraw': MatchAction,
    'acceptDraw': MatchAction,
    'refuseDraw': MatchAction,
    'resign': MatchAction,
}


def parse_event(name: str, data) -> EventPayload:
    """Validate ``data`` against the schema registered for ``name``.

    Raises ``KeyError`` for unknown events and pydantic's ``ValidationError``
    for malformed payloads.
    """
    schema = EVENT_SCHEMAS[name]
    return schema.model_validate(data or {})


def describe_validation_error(exc) -> str:
    parts = []
    for err in exc.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ())) or 'payload'
        parts.append(f"{loc}: {err.get('msg')}")
    return 'Invalid payload (' + '; '.join(parts) + ')'
