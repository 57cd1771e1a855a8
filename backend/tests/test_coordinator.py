import pytest
import sqlalchemy as sa

from arcade import db
from arcade.models import Match, MatchmakingTicket, User
from arcade.services.games.errors import (
    CellOccupied,
    DrawAlreadyOffered,
    InvalidCell,
    MatchConflict,
    MatchNotActive,
    MatchNotFound,
    NoDrawOffer,
    NotAParticipant,
    NotYourTurn,
)


def _match(match_id):
    return db.session.get(Match, match_id, populate_existing=True)


def _user(player_id):
    return db.session.get(User, player_id, populate_existing=True)


@pytest.fixture()
def match_id(coordinator, broadcaster, players):
    """An ongoing match where alice (X) moves first."""
    alice, bob = players
    coordinator.request_match(alice, 'tictactoe')
    match = coordinator.request_match(bob, 'tictactoe').match
    broadcaster.sent.clear()
    return match.id


def _play(coordinator, match_id, players, cells):
    """Alternate moves starting with alice."""
    alice, bob = players
    for i, cell in enumerate(cells):
        coordinator.apply_move(match_id, alice if i % 2 == 0 else bob, cell)


def test_alice_completes_top_row(coordinator, broadcaster, players, match_id):
    alice, bob = players
    _play(coordinator, match_id, players, [0, 4, 1, 3, 2])

    match = _match(match_id)
    assert match.status == 'finished'
    assert match.winner_id == alice
    assert match.reason == 'win'
    assert match.board[:3] == ['X', 'X', 'X']

    assert len(broadcaster.events('moveMade')) == 4
    finished = broadcaster.events('gameFinished')
    assert len(finished) == 1
    assert finished[0][:2] == ('match', match_id)
    assert finished[0][3]['match']['result'] == {'status': 'finished', 'winner': alice, 'reason': 'win'}

    for pid in players:
        user = _user(pid)
        assert user.status == 'online'
        assert user.current_match_id is None
    assert match_id not in coordinator.timers.armed


def test_move_log_alternates_from_first_player(coordinator, players, match_id):
    alice, bob = players
    _play(coordinator, match_id, players, [0, 4, 1, 3, 2])
    moves = _match(match_id).moves
    assert [m.player_id for m in moves] == [alice, bob, alice, bob, alice]
    assert [m.cell_index for m in moves] == [0, 4, 1, 3, 2]
    assert [m.seq for m in moves] == [1, 2, 3, 4, 5]
    assert [m.symbol for m in moves] == ['X', 'O', 'X', 'O', 'X']


def test_move_made_payload(coordinator, broadcaster, players, match_id):
    alice, bob = players
    coordinator.apply_move(match_id, alice, 4)
    (_, target, _, payload), = broadcaster.events('moveMade')
    assert target == match_id
    assert payload['board'][4] == 'X'
    assert payload['turn'] == bob
    assert payload['moves'][0]['player'] == alice
    assert payload['moves'][0]['index'] == 4


@pytest.mark.parametrize('line', [
    (0, 1, 2), (3, 4, 5), (6, 7, 8),
    (0, 3, 6), (1, 4, 7), (2, 5, 8),
    (0, 4, 8), (2, 4, 6),
])
def test_win_detected_on_every_line(coordinator, players, match_id, line):
    alice, _ = players
    bob_cells = [c for c in range(9) if c not in line][:2]
    _play(coordinator, match_id, players, [line[0], bob_cells[0], line[1], bob_cells[1], line[2]])
    match = _match(match_id)
    assert match.reason == 'win'
    assert match.winner_id == alice


def test_full_board_is_a_draw(coordinator, broadcaster, players, match_id):
    _play(coordinator, match_id, players, [0, 1, 2, 4, 3, 5, 7, 6, 8])
    match = _match(match_id)
    assert match.status == 'finished'
    assert match.reason == 'draw'
    assert match.winner_id is None
    assert len(match.moves) == 9
    assert len(broadcaster.events('gameFinished')) == 1


def test_out_of_turn_move_rejected(coordinator, broadcaster, players, match_id):
    _, bob = players
    with pytest.raises(NotYourTurn):
        coordinator.apply_move(match_id, bob, 0)
    assert _match(match_id).board == [None] * 9
    assert broadcaster.sent == []


@pytest.mark.parametrize('cell', [-1, 9, '3', None])
def test_invalid_cell_rejected(coordinator, players, match_id, cell):
    alice, _ = players
    with pytest.raises(InvalidCell):
        coordinator.apply_move(match_id, alice, cell)


def test_occupied_cell_rejected(coordinator, players, match_id):
    alice, bob = players
    coordinator.apply_move(match_id, alice, 4)
    with pytest.raises(CellOccupied):
        coordinator.apply_move(match_id, bob, 4)
    match = _match(match_id)
    assert match.board[4] == 'X'
    assert match.turn_id == bob


def test_unknown_match_and_outsider(coordinator, make_user, match_id):
    outsider = make_user('mallory')
    with pytest.raises(MatchNotFound):
        coordinator.apply_move(9999, outsider, 0)
    with pytest.raises(NotAParticipant):
        coordinator.apply_move(match_id, outsider, 0)


def test_finished_match_is_immutable(coordinator, players, match_id):
    alice, bob = players
    _play(coordinator, match_id, players, [0, 4, 1, 3, 2])
    before = _match(match_id).to_dict()

    with pytest.raises(MatchNotActive):
        coordinator.apply_move(match_id, bob, 8)
    with pytest.raises(MatchNotActive):
        coordinator.accept_draw(match_id, bob)
    with pytest.raises(MatchNotActive):
        coordinator.resign(match_id, alice)
    assert coordinator.handle_timeout(match_id, bob) is None

    after = _match(match_id).to_dict()
    assert after['game_state'] == before['game_state']
    assert after['result'] == before['result']


def test_timeout_loses_for_turn_holder(coordinator, broadcaster, players, match_id):
    alice, bob = players
    assert coordinator.timers.expire(match_id) == alice

    match = _match(match_id)
    assert match.status == 'finished'
    assert match.reason == 'timeout'
    assert match.winner_id == bob
    assert len(broadcaster.events('gameFinished')) == 1
    assert _user(alice).current_match_id is None


def test_timer_rearmed_for_each_new_turn(coordinator, players, match_id):
    alice, bob = players
    coordinator.apply_move(match_id, alice, 0)
    coordinator.apply_move(match_id, bob, 4)
    assert coordinator.timers.history[-3:] == [(match_id, alice), (match_id, bob), (match_id, alice)]


def test_stale_timer_is_ignored(coordinator, players, match_id):
    alice, bob = players
    stale = coordinator.timers.callback_for(match_id)
    coordinator.apply_move(match_id, alice, 0)

    stale()
    match = _match(match_id)
    assert match.status == 'ongoing'
    assert match.turn_id == bob
    assert match.board[0] == 'X'


def test_stale_timer_for_returning_turn_holder_is_ignored(coordinator, players, match_id):
    alice, bob = players
    stale = coordinator.timers.callback_for(match_id)
    coordinator.apply_move(match_id, alice, 0)
    coordinator.apply_move(match_id, bob, 4)
    # alice holds the turn again, but two moves were made since the old clock
    stale()
    match = _match(match_id)
    assert match.status == 'ongoing'
    assert match.turn_id == alice


def test_timeout_for_wrong_player_is_noop(coordinator, players, match_id):
    _, bob = players
    assert coordinator.handle_timeout(match_id, bob) is None
    assert coordinator.handle_timeout(9999, bob) is None
    assert _match(match_id).status == 'ongoing'


def test_tick_broadcasts_time_left(coordinator, broadcaster, players, match_id):
    alice, _ = players
    coordinator.timers.tick(match_id, 12)
    assert broadcaster.events('timerUpdate') == [
        ('match', match_id, 'timerUpdate', {'timeLeft': 12, 'currentPlayer': alice}),
    ]
    assert _match(match_id).status == 'ongoing'


def test_draw_offer_and_accept(coordinator, broadcaster, players, match_id):
    alice, bob = players
    coordinator.offer_draw(match_id, alice)
    assert broadcaster.events('drawOffered') == [('player', bob, 'drawOffered', {'from': alice})]
    with pytest.raises(DrawAlreadyOffered):
        coordinator.offer_draw(match_id, bob)

    coordinator.accept_draw(match_id, bob)
    match = _match(match_id)
    assert match.status == 'finished'
    assert match.reason == 'draw'
    assert match.winner_id is None
    assert coordinator.draws.pending(match_id) is None
    assert match_id not in coordinator.timers.armed
    assert len(broadcaster.events('gameFinished')) == 1


def test_accept_requires_opponents_offer(coordinator, players, match_id):
    alice, bob = players
    with pytest.raises(NoDrawOffer):
        coordinator.accept_draw(match_id, bob)
    coordinator.offer_draw(match_id, alice)
    with pytest.raises(NoDrawOffer):
        coordinator.accept_draw(match_id, alice)
    assert _match(match_id).status == 'ongoing'


def test_accept_consumes_offer_before_finishing(coordinator, monkeypatch, players, match_id):
    alice, bob = players
    coordinator.offer_draw(match_id, alice)
    finish = coordinator._finish
    pending_at_finish = []

    def recording_finish(match, winner_id, reason):
        pending_at_finish.append(coordinator.draws.pending(match.id))
        # a cancel arriving now has nothing left to cancel
        with pytest.raises(NoDrawOffer):
            coordinator.cancel_draw(match.id, alice)
        finish(match, winner_id, reason)

    monkeypatch.setattr(coordinator, '_finish', recording_finish)
    coordinator.accept_draw(match_id, bob)
    assert pending_at_finish == [None]
    assert _match(match_id).reason == 'draw'


def test_failed_accept_restores_offer(coordinator, monkeypatch, players, match_id):
    alice, bob = players
    coordinator.offer_draw(match_id, alice)

    def broken_finish(match, winner_id, reason):
        raise RuntimeError('database went away')

    monkeypatch.setattr(coordinator, '_finish', broken_finish)
    with pytest.raises(RuntimeError):
        coordinator.accept_draw(match_id, bob)
    assert coordinator.draws.pending(match_id) == alice
    assert _match(match_id).status == 'ongoing'


def test_refuse_draw(coordinator, broadcaster, players, match_id):
    alice, bob = players
    coordinator.offer_draw(match_id, alice)
    coordinator.refuse_draw(match_id, bob)
    assert broadcaster.events('drawRefused') == [('player', alice, 'drawRefused', {})]
    assert coordinator.draws.pending(match_id) is None
    assert _match(match_id).status == 'ongoing'
    with pytest.raises(NoDrawOffer):
        coordinator.refuse_draw(match_id, bob)


def test_cancel_draw(coordinator, broadcaster, players, match_id):
    alice, bob = players
    coordinator.offer_draw(match_id, alice)
    with pytest.raises(NoDrawOffer):
        coordinator.cancel_draw(match_id, bob)
    coordinator.cancel_draw(match_id, alice)
    assert broadcaster.events('drawCanceled') == [('player', bob, 'drawCanceled', {})]
    assert coordinator.draws.pending(match_id) is None
    # a new offer is possible after cancel
    coordinator.offer_draw(match_id, bob)
    assert coordinator.draws.pending(match_id) == bob


def test_offer_draw_soft_errors(coordinator, make_user, players, match_id):
    alice, _ = players
    outsider = make_user('mallory')
    with pytest.raises(NotAParticipant):
        coordinator.offer_draw(match_id, outsider)
    coordinator.resign(match_id, alice)
    with pytest.raises(MatchNotActive, match='Cannot offer draw'):
        coordinator.offer_draw(match_id, alice)


def test_finishing_discards_pending_offer(coordinator, players, match_id):
    alice, _ = players
    coordinator.offer_draw(match_id, alice)
    _play(coordinator, match_id, players, [0, 4, 1, 3, 2])
    assert coordinator.draws.pending(match_id) is None


def test_resign(coordinator, broadcaster, players, match_id):
    alice, bob = players
    coordinator.resign(match_id, bob)
    match = _match(match_id)
    assert match.reason == 'resignation'
    assert match.winner_id == alice
    assert len(broadcaster.events('gameFinished')) == 1


def test_register_and_disconnect_presence(coordinator, broadcaster, players):
    alice, _ = players
    user = coordinator.handle_register(alice, 'sid-1')
    assert user.status == 'online'
    assert coordinator.connections.sid_for(alice) == 'sid-1'

    coordinator.request_match(alice, 'tictactoe', sid='sid-1')
    assert coordinator.handle_disconnect('sid-1') == alice
    assert _user(alice).status == 'offline'
    assert MatchmakingTicket.query.filter_by(player_id=alice).count() == 0
    assert coordinator.connections.sid_for(alice) is None


def test_register_while_queued_keeps_waiting(coordinator, broadcaster, players):
    alice, _ = players
    coordinator.request_match(alice, 'tictactoe')
    user = coordinator.handle_register(alice, 'sid-x')
    assert user.status == 'waiting'
    assert coordinator.queue.ticket_for(alice) is not None


def test_disconnect_does_not_forfeit(coordinator, players, match_id):
    alice, bob = players
    coordinator.handle_register(alice, 'sid-a')
    coordinator.handle_disconnect('sid-a')

    match = _match(match_id)
    assert match.status == 'ongoing'
    user = _user(alice)
    assert user.status == 'offline'
    assert user.current_match_id == match_id

    # reconnecting resumes the match
    assert coordinator.handle_register(alice, 'sid-a2').status == 'in-game'
    coordinator.apply_move(match_id, alice, 0)
    assert _match(match_id).turn_id == bob


def test_offline_player_stays_offline_when_match_ends(coordinator, players, match_id):
    alice, bob = players
    coordinator.handle_register(bob, 'sid-b')
    coordinator.handle_disconnect('sid-b')
    coordinator.timers.expire(match_id)
    assert _user(bob).status == 'offline'
    assert _user(bob).current_match_id is None


def test_replaced_connection_disconnect_keeps_presence(coordinator, players):
    alice, _ = players
    coordinator.handle_register(alice, 'old')
    coordinator.handle_register(alice, 'new')
    assert coordinator.handle_disconnect('old') is None
    assert _user(alice).status == 'online'
    assert coordinator.connections.sid_for(alice) == 'new'


def _bump_version(match_id):
    stmt = (
        sa.update(Match)
        .where(Match.id == match_id)
        .values(version=Match.version + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(stmt)


def test_concurrent_write_is_retried_on_fresh_state(coordinator, players, match_id):
    seen_versions = []

    def flip_turn(match):
        seen_versions.append(match.version)
        if len(seen_versions) == 1:
            # another writer commits between our read and our write
            _bump_version(match.id)
        match.turn_id = match.opponent_of(match.turn_id)
        return 'moved'

    match, outcome = coordinator._mutate(match_id, flip_turn)
    assert outcome == 'moved'
    assert len(seen_versions) == 2
    assert _match(match_id).turn_id == players[1]


def test_conflict_surfaces_after_retries(coordinator, match_id):
    def always_loses(match):
        _bump_version(match.id)
        match.turn_id = match.opponent_of(match.turn_id)
        return 'moved'

    with pytest.raises(MatchConflict):
        coordinator._mutate(match_id, always_loses)
