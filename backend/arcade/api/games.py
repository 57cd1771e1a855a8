from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from arcade.services.games import get_coordinator
from arcade.services.games.errors import GameError, NotAParticipant


games = Blueprint('games', __name__)


@games.errorhandler(GameError)
def handle_game_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


@games.route('/join', methods=['POST'])
@login_required
def join_queue():
    """
    Puts the current user in the matchmaking queue, or pairs them with the
    oldest waiting player for the same game.
    """
    data = request.get_json(silent=True) or {}
    game = data.get('game') or 'tictactoe'
    coordinator = get_coordinator()
    sid = coordinator.connections.sid_for(current_user.id)
    result = coordinator.request_match(current_user.id, game, sid=sid)
    if result.matched:
        return jsonify({'matched': True, 'match': result.match.to_dict()}), 200
    return jsonify({'matched': False, 'waiting': True}), 202


@games.route('/leave', methods=['POST'])
@login_required
def leave_queue():
    removed = get_coordinator().cancel_request(current_user.id)
    return jsonify({'canceled': removed}), 200


@games.route('/move', methods=['POST'])
@login_required
def make_move():
    data = request.get_json(silent=True) or {}
    match_id = data.get('match_id', data.get('matchId'))
    index = data.get('index', data.get('cell_index'))
    if match_id is None or index is None:
        return jsonify({'error': 'match_id and index are required'}), 400
    try:
        match_id = int(match_id)
    except (TypeError, ValueError):
        return jsonify({'error': 'match_id must be an integer'}), 400
    match = get_coordinator().apply_move(match_id, current_user.id, index)
    return jsonify({'match': match.to_dict()}), 200


@games.route('/matches/current', methods=['GET'])
@login_required
def get_current_match():
    match = get_coordinator().current_match_for(current_user.id)
    return jsonify({'match': match.to_dict() if match else None}), 200


@games.route('/matches/<int:match_id>', methods=['GET'])
@login_required
def get_match(match_id):
    match = get_coordinator().get_match(match_id)
    if not match.is_participant(current_user.id):
        raise NotAParticipant()
    return jsonify({'match': match.to_dict()}), 200
