"""
Status notifier for capture processing.

Pushes job and record updates to every connected client of a user:
- Per-user fan-out across web app and extension connections
- Best-effort delivery, nothing is queued for offline users
- A socket that fails or stalls on send is dropped
"""

import asyncio
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

from capture_pipeline.config import settings
from capture_pipeline.models import CaptureRecord, Job, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    """Information about a connected client socket."""
    websocket: Any
    user_id: str
    client_id: Optional[str]
    connected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'client_id': self.client_id,
            'connected_at': self.connected_at.isoformat(),
        }


class StatusNotifier:
    """Fan-out of pipeline events to a user's open sockets."""

    def __init__(self, send_timeout: Optional[float] = None):
        self.send_timeout = send_timeout if send_timeout is not None else settings.notifier_send_timeout_seconds
        self.active_connections: Dict[str, ConnectionInfo] = {}  # connection_id -> ConnectionInfo
        self.user_connections: Dict[str, Set[str]] = defaultdict(set)  # user_id -> connection_ids
        self.connection_counter = 0
        self._stats = {
            'total_connections': 0,
            'messages_sent': 0,
            'messages_dropped': 0,
            'send_failures': 0,
        }

    def _generate_connection_id(self) -> str:
        self.connection_counter += 1
        return f"conn_{int(time.time())}_{self.connection_counter}"

    async def connect(self, websocket: Any, user_id: str, client_id: Optional[str] = None) -> str:
        """Accept a socket and register it for the user's updates."""
        await websocket.accept()
        connection_id = self._generate_connection_id()
        self.active_connections[connection_id] = ConnectionInfo(
            websocket=websocket, user_id=user_id, client_id=client_id
        )
        self.user_connections[user_id].add(connection_id)
        self._stats['total_connections'] += 1

        await self._send_to_connection(connection_id, {
            'type': 'connection_established',
            'connection_id': connection_id,
            'timestamp': utcnow().isoformat(),
        })
        logger.info(f"User {user_id} connected with {connection_id} "
                    f"({len(self.user_connections[user_id])} active)")
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        info = self.active_connections.pop(connection_id, None)
        if info is None:
            return
        self.user_connections[info.user_id].discard(connection_id)
        if not self.user_connections[info.user_id]:
            del self.user_connections[info.user_id]
        logger.info(f"User {info.user_id} disconnected from {connection_id}")

    async def _send_to_connection(self, connection_id: str, message: Dict[str, Any]) -> bool:
        info = self.active_connections.get(connection_id)
        if info is None:
            return False
        try:
            await asyncio.wait_for(info.websocket.send_json(message), timeout=self.send_timeout)
            self._stats['messages_sent'] += 1
            return True
        except Exception as e:
            logger.warning(f"Failed to send to connection {connection_id}: {e}")
            self._stats['send_failures'] += 1
            self.disconnect(connection_id)
            return False

    async def publish(self, user_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """Send an event to all of a user's connections. Returns deliveries."""
        connection_ids = list(self.user_connections.get(user_id, ()))
        if not connection_ids:
            self._stats['messages_dropped'] += 1
            logger.debug(f"No connections for user {user_id}, dropping {event_type}")
            return 0

        message = {'type': event_type, 'data': data, 'timestamp': utcnow().isoformat()}
        results = await asyncio.gather(*(self._send_to_connection(cid, message) for cid in connection_ids))
        return sum(1 for delivered in results if delivered)

    async def record_update(self, record: CaptureRecord) -> int:
        return await self.publish(record.owner_id, 'record_update', record.to_api())

    async def job_update(self, job: Job) -> int:
        return await self.publish(job.owner_id, 'job_update', job.to_api())

    async def handle_message(self, connection_id: str, data: str) -> None:
        """Answer client pings; anything else is ignored."""
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from connection {connection_id}")
            return
        if message.get('type') == 'ping':
            await self._send_to_connection(connection_id, {
                'type': 'pong',
                'timestamp': utcnow().isoformat(),
            })

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'active_connections': len(self.active_connections),
            'active_users': len(self.user_connections),
        }
