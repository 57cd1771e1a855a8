"""Delivery of match and queue events to connected clients.

The coordinator never touches the Socket.IO server directly; it is handed a
broadcaster that can reach one connection, one player (through the
connection registry) or everyone subscribed to a match room.
"""
import threading
from typing import Dict, Optional

NAMESPACE = '/ws'


def match_room(match_id) -> str:
    return f"match:{match_id}"


class ConnectionRegistry:
    """Maps a player to zero-or-one live connection and back."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sid_by_player: Dict[int, str] = {}
        self._player_by_sid: Dict[str, int] = {}

    def bind(self, player_id: int, sid: str) -> Optional[str]:
        """Bind ``sid`` to the player; returns the connection it replaced, if any."""
        with self._lock:
            previous_player = self._player_by_sid.pop(sid, None)
            if previous_player is not None and self._sid_by_player.get(previous_player) == sid:
                del self._sid_by_player[previous_player]
            replaced = self._sid_by_player.get(player_id)
            if replaced is not None:
                self._player_by_sid.pop(replaced, None)
            self._sid_by_player[player_id] = sid
            self._player_by_sid[sid] = player_id
            return replaced

    def unbind(self, sid: str) -> Optional[int]:
        """Forget ``sid``; returns the player only if it was their live connection."""
        with self._lock:
            player_id = self._player_by_sid.pop(sid, None)
            if player_id is None or self._sid_by_player.get(player_id) != sid:
                return None
            del self._sid_by_player[player_id]
            return player_id

    def sid_for(self, player_id: int) -> Optional[str]:
        with self._lock:
            return self._sid_by_player.get(player_id)

    def player_for(self, sid: str) -> Optional[int]:
        with self._lock:
            return self._player_by_sid.get(sid)


class SocketIOBroadcaster:
    def __init__(self, socketio, registry: ConnectionRegistry, namespace: str = NAMESPACE):
        self.socketio = socketio
        self.registry = registry
        self.namespace = namespace

    def to_connection(self, sid, event, payload=None):
        self.socketio.emit(event, payload or {}, to=sid, namespace=self.namespace)

    def to_player(self, player_id, event, payload=None) -> bool:
        """Send to the player's live connection; False when they have none."""
        sid = self.registry.sid_for(player_id)
        if sid is None:
            return False
        self.to_connection(sid, event, payload)
        return True

    def to_match(self, match_id, event, payload=None):
        self.socketio.emit(event, payload or {}, to=match_room(match_id), namespace=self.namespace)
