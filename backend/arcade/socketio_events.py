from functools import wraps

from flask import current_app, request
from flask_socketio import emit, join_room
from pydantic import ValidationError

from arcade import socketio
from arcade.services.games import get_coordinator
from arcade.services.games.broadcast import NAMESPACE, match_room
from arcade.services.games.errors import GameError, NotAParticipant, NotRegistered
from arcade.services.games.events import describe_validation_error, parse_event


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _acting_player(payload_player_id=None) -> int:
    """The player this connection acts for.

    A payload may name the player only when it matches the identity the
    connection registered with.
    """
    registered = get_coordinator().connections.player_for(_get_sid())
    if registered is None:
        raise NotRegistered()
    if payload_player_id is not None and payload_player_id != registered:
        raise NotAParticipant('Connection is registered as another player')
    return registered


def socket_event(name):
    """Validate the payload for ``name`` and turn soft errors into ``errorMessage``."""
    def decorator(fn):
        @wraps(fn)
        def handler(data=None):
            try:
                payload = parse_event(name, data)
                return fn(payload)
            except ValidationError as exc:
                emit('errorMessage', {'message': describe_validation_error(exc)})
            except GameError as exc:
                current_app.logger.info(f"[rejected] event={name} sid={_get_sid()} reason={exc}")
                emit('errorMessage', {'message': str(exc)})
        return handler
    return decorator


def handle_connect():
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_disconnect(*args):
    get_coordinator().handle_disconnect(_get_sid())


@socket_event('register')
def handle_register(payload):
    user = get_coordinator().handle_register(payload.player_id, _get_sid())
    emit('registered', {'player_id': user.id, 'status': user.status})


@socket_event('requestMatch')
def handle_request_match(payload):
    player_id = _acting_player(payload.player_id)
    get_coordinator().request_match(player_id, payload.game, sid=_get_sid())


@socket_event('cancelRequest')
def handle_cancel_request(payload):
    player_id = _acting_player(payload.player_id)
    get_coordinator().cancel_request(player_id)
    emit('requestCanceled', {})


@socket_event('joinMatchRoom')
def handle_join_match_room(payload):
    player_id = _acting_player(payload.player_id)
    match = get_coordinator().get_match(payload.match_id)
    if not match.is_participant(player_id):
        raise NotAParticipant()
    room = match_room(match.id)
    join_room(room)
    emit('joinedMatchRoom', {'room': room, 'match': match.to_dict()})
    emit('playerJoined', {'player_id': player_id}, to=room, include_self=False)


@socket_event('makeMove')
def handle_make_move(payload):
    player_id = _acting_player(payload.player_id)
    get_coordinator().apply_move(payload.match_id, player_id, payload.cell_index)


@socket_event('offerDraw')
def handle_offer_draw(payload):
    get_coordinator().offer_draw(payload.match_id, _acting_player(payload.player_id))


@socket_event('cancelDraw')
def handle_cancel_draw(payload):
    get_coordinator().cancel_draw(payload.match_id, _acting_player(payload.player_id))


@socket_event('acceptDraw')
def handle_accept_draw(payload):
    get_coordinator().accept_draw(payload.match_id, _acting_player(payload.player_id))


@socket_event('refuseDraw')
def handle_refuse_draw(payload):
    get_coordinator().refuse_draw(payload.match_id, _acting_player(payload.player_id))


@socket_event('resign')
def handle_resign(payload):
    get_coordinator().resign(payload.match_id, _acting_player(payload.player_id))


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(namespace: str = NAMESPACE) -> None:
    """Register Socket.IO event handlers on ``namespace``."""
    socketio.on_event('connect', handle_connect, namespace=namespace)
    socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
    socketio.on_event('register', handle_register, namespace=namespace)
    socketio.on_event('requestMatch', handle_request_match, namespace=namespace)
    socketio.on_event('cancelRequest', handle_cancel_request, namespace=namespace)
    socketio.on_event('joinMatchRoom', handle_join_match_room, namespace=namespace)
    socketio.on_event('makeMove', handle_make_move, namespace=namespace)
    socketio.on_event('offerDraw', handle_offer_draw, namespace=namespace)
    socketio.on_event('cancelDraw', handle_cancel_draw, namespace=namespace)
    socketio.on_event('acceptDraw', handle_accept_draw, namespace=namespace)
    socketio.on_event('refuseDraw', handle_refuse_draw, namespace=namespace)
    socketio.on_event('resign', handle_resign, namespace=namespace)
    socketio.on_event('ping', handle_ping, namespace=namespace)
