"""Game domain services: matchmaking, the match state machine and move timers.

This package contains the core game mechanics that HTTP routes and socket
handlers call into, keeping transport concerns separated from them.
"""
from flask import current_app


def build_coordinator(app, socketio, timers=None, coin_flip=None):
    """Wire the queue, transport and timer service for ``app``."""
    from .broadcast import ConnectionRegistry, SocketIOBroadcaster
    from .coordinator import MatchCoordinator, coin_flip as default_coin_flip
    from .matchmaking import MatchmakingQueue
    from .scheduler import TurnTimer

    cfg = app.config
    connections = ConnectionRegistry()
    queue = MatchmakingQueue(
        cfg.get('GAME_TYPES', ('tictactoe',)),
        claim_retries=cfg.get('MATCHMAKING_CLAIM_RETRIES', 3),
        logger=app.logger,
    )
    if timers is None:
        timers = TurnTimer(
            socketio.start_background_task,
            socketio.sleep,
            duration=int(cfg.get('TURN_DURATION_SEC', 30)),
            tick=int(cfg.get('TURN_TICK_SEC', 1)),
            logger=app.logger,
        )
    return MatchCoordinator(
        app,
        queue,
        SocketIOBroadcaster(socketio, connections),
        connections,
        timers,
        coin_flip=coin_flip or default_coin_flip,
        write_retries=cfg.get('MATCH_WRITE_RETRIES', 3),
    )


def get_coordinator():
    return current_app.extensions['match_coordinator']
