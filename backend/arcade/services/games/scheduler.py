import logging
import threading
from typing import Callable, Dict, Optional, Protocol


class TimerService(Protocol):
    """Move-deadline scheduling for ongoing matches."""

    def arm(self, match_id: int, player_id: int, on_expire: Callable[[], None],
            on_tick: Optional[Callable[[int], None]] = None) -> object:
        """Start the clock for ``player_id``, replacing any clock armed for the match."""
        ...

    def cancel(self, match_id: int) -> bool:
        """Stop the match's clock. Returns whether one was armed."""
        ...


class TurnTimer:
    """In-process move clock, one live timer per match.

    Each ``arm`` registers a fresh token for the match and spawns a worker
    through ``spawn`` (``socketio.start_background_task`` in the app). A
    worker whose token has been superseded or canceled exits at its next
    step without ticking or expiring, so an old clock can never resolve a
    newer turn. Timers live in process memory and are lost on restart.
    """

    def __init__(self, spawn, sleep, duration: int = 30, tick: int = 1, logger=None):
        self._spawn = spawn
        self._sleep = sleep
        self.duration = duration
        self.tick = tick if tick and tick > 0 else duration
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._armed: Dict[int, object] = {}

    def arm(self, match_id, player_id, on_expire, on_tick=None):
        token = object()
        with self._lock:
            superseded = match_id in self._armed
            self._armed[match_id] = token
        self.logger.info(
            f"[timer-set] match={match_id} player={player_id} duration={self.duration}s superseded={superseded}"
        )
        self._spawn(self._worker, match_id, player_id, token, on_expire, on_tick)
        return token

    def cancel(self, match_id):
        with self._lock:
            return self._armed.pop(match_id, None) is not None

    def is_armed(self, match_id) -> bool:
        with self._lock:
            return match_id in self._armed

    def _is_current(self, match_id, token) -> bool:
        with self._lock:
            return self._armed.get(match_id) is token

    def _worker(self, match_id, player_id, token, on_expire, on_tick):
        elapsed = 0
        while elapsed < self.duration:
            step = min(self.tick, self.duration - elapsed)
            self._sleep(step)
            elapsed += step
            if not self._is_current(match_id, token):
                self.logger.debug(f"[timer-abort] match={match_id} player={player_id} superseded")
                return
            if on_tick is not None:
                try:
                    on_tick(self.duration - elapsed)
                except Exception:
                    self.logger.exception(f"[timer-tick] match={match_id} tick callback failed")

        with self._lock:
            if self._armed.get(match_id) is not token:
                return
            del self._armed[match_id]
        self.logger.info(f"[timer-fire] match={match_id} player={player_id}")
        try:
            on_expire()
        except Exception:
            self.logger.exception(f"[timer-fire] match={match_id} expiry callback failed")
