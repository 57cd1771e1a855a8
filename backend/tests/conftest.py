import os
import sys
import pytest
from flask import g

# Ensure the backend root (containing the `arcade` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from arcade import create_app, db, socketio
from arcade.services.games import get_coordinator


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    LOG_LEVEL = 'DEBUG'
    CORS_ORIGINS = ['http://localhost:5173']
    GAME_TYPES = ('tictactoe',)
    TURN_DURATION_SEC = 30
    TURN_TICK_SEC = 1
    MATCH_WRITE_RETRIES = 3
    MATCHMAKING_CLAIM_RETRIES = 3


class RecordingTimers:
    """Timer service double: remembers armed clocks and fires them on demand."""

    def __init__(self):
        self.armed = {}
        self.history = []
        self.canceled = []

    def arm(self, match_id, player_id, on_expire, on_tick=None):
        self.armed[match_id] = (player_id, on_expire, on_tick)
        self.history.append((match_id, player_id))
        return object()

    def cancel(self, match_id):
        self.canceled.append(match_id)
        return self.armed.pop(match_id, None) is not None

    def expire(self, match_id):
        player_id, on_expire, _ = self.armed.pop(match_id)
        on_expire()
        return player_id

    def callback_for(self, match_id):
        return self.armed[match_id][1]

    def tick(self, match_id, time_left):
        self.armed[match_id][2](time_left)


class RecordingBroadcaster:
    def __init__(self, registry):
        self.registry = registry
        self.sent = []

    def to_connection(self, sid, event, payload=None):
        self.sent.append(('sid', sid, event, payload or {}))

    def to_player(self, player_id, event, payload=None):
        self.sent.append(('player', player_id, event, payload or {}))
        return True

    def to_match(self, match_id, event, payload=None):
        self.sent.append(('match', match_id, event, payload or {}))

    def events(self, name):
        return [entry for entry in self.sent if entry[2] == name]


class FixedCoin:
    """Coin flip double; True gives the first turn to the player who waited."""

    def __init__(self, value=True):
        self.value = value

    def __call__(self):
        return self.value


def _forget_login_user():
    # Test requests share the fixture's app context, and with it ``g``;
    # drop the user Flask-Login cached there so each client's cookie decides.
    g.pop('_login_user', None)


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    application.before_request(_forget_login_user)
    with application.app_context():
        # Ensure models are imported so tables are created
        import arcade.models  # noqa: F401
        db.create_all()
        coordinator = get_coordinator()
        coordinator.timers = RecordingTimers()
        coordinator.coin_flip = FixedCoin(True)
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def coordinator(flask_app):
    return get_coordinator()


@pytest.fixture()
def broadcaster(coordinator):
    recording = RecordingBroadcaster(coordinator.connections)
    coordinator.broadcaster = recording
    return recording


@pytest.fixture()
def make_user(flask_app):
    from arcade.models import User

    def _make(username, password='password'):
        user = User(username=username)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id
    return _make


@pytest.fixture()
def players(make_user):
    return make_user('alice'), make_user('bob')


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
