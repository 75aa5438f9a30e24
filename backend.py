import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Set

import redis

from constants import REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, SEND_TIMEOUT_SECONDS
from logging_config import get_logger, short_address
from redis_keys import REDIS_ROOM_CHANNEL

logger = get_logger(__name__)


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data})


class LocalBroadcaster:
    """Fan-out to the WebSockets connected to this process.

    Anything with an async send_text(str) works as a connection, which keeps
    handlers testable without a real socket.

    Deliveries to one room are serialized so every member sees the same order.
    Rooms do not wait on each other, and a send that does not finish within
    send_timeout drops that connection.
    """

    def __init__(self, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.send_timeout = send_timeout
        # {connection_id: websocket}
        self.connections: Dict[str, Any] = {}
        # {room_address: {connection_id, ...}}
        self.channels: Dict[str, Set[str]] = {}
        # {room_address: lock}, only while the room has local subscribers
        self._locks: Dict[str, asyncio.Lock] = {}

    def register(self, connection_id: str, websocket) -> None:
        self.connections[connection_id] = websocket
        logger.debug(f"Registered connection {connection_id} (local connections: {len(self.connections)})")

    async def unregister(self, connection_id: str) -> None:
        for room_address in self._forget(connection_id):
            await self._room_emptied(room_address)
        logger.debug(f"Unregistered connection {connection_id} (local connections: {len(self.connections)})")

    def _forget(self, connection_id: str) -> List[str]:
        """Drop a connection from every registry; returns the rooms it left empty."""
        self.connections.pop(connection_id, None)
        emptied = []
        for room_address, members in list(self.channels.items()):
            members.discard(connection_id)
            if not members:
                del self.channels[room_address]
                emptied.append(room_address)
        return emptied

    async def _room_emptied(self, room_address: str) -> None:
        logger.debug(f"No more local subscribers in room {short_address(room_address)}")
        self._drop_lock(room_address)

    def _drop_lock(self, room_address: str) -> None:
        lock = self._locks.get(room_address)
        if lock is not None and not lock.locked() and room_address not in self.channels:
            del self._locks[room_address]

    async def subscribe(self, room_address: str, connection_id: str) -> None:
        self.channels.setdefault(room_address, set()).add(connection_id)
        logger.debug(f"Connection {connection_id} subscribed to room {short_address(room_address)}")

    async def unsubscribe(self, room_address: str, connection_id: str) -> None:
        members = self.channels.get(room_address)
        if members is not None:
            members.discard(connection_id)
            if members:
                return
            del self.channels[room_address]
        await self._room_emptied(room_address)

    def subscribers(self, room_address: str) -> Set[str]:
        return set(self.channels.get(room_address, ()))

    async def _send(self, websocket, frame: str) -> None:
        await asyncio.wait_for(websocket.send_text(frame), self.send_timeout)

    async def send_to(self, connection_id: str, event: str, data: Any) -> bool:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            logger.debug(f"Dropping {event} for unknown connection {connection_id}")
            return False
        try:
            await self._send(websocket, encode_frame(event, data))
            return True
        except Exception as e:
            logger.warning(f"Error sending {event} to connection {connection_id}: {e!r}")
            return False

    async def broadcast(self, room_address: str, event: str, data: Any, exclude: Optional[str] = None) -> None:
        await self.deliver(room_address, encode_frame(event, data), exclude)

    async def deliver(self, room_address: str, frame: str, exclude: Optional[str] = None) -> None:
        if room_address not in self.channels:
            return
        failed = []
        async with self._locks.setdefault(room_address, asyncio.Lock()):
            targets = [conn_id for conn_id in self.subscribers(room_address) if conn_id != exclude and conn_id in self.connections]
            if targets:
                results = await asyncio.gather(
                    *(self._send(self.connections[conn_id], frame) for conn_id in targets),
                    return_exceptions=True,
                )
                failed = [(conn_id, result) for conn_id, result in zip(targets, results) if isinstance(result, Exception)]
                logger.debug(f"Broadcasted frame to {len(targets)} connections in room {short_address(room_address)}")
        for conn_id, error in failed:
            logger.warning(f"Dropping connection {conn_id} in room {short_address(room_address)} after failed send: {error!r}")
            await self.unregister(conn_id)
        self._drop_lock(room_address)

    async def close(self) -> None:
        self.channels.clear()
        self.connections.clear()
        self._locks.clear()


class RedisBroadcaster(LocalBroadcaster):
    """Relays room broadcasts through Redis pub/sub.

    Every instance tracks only its own WebSockets. A listener task per room
    (alive while the room has local subscribers) picks frames off the room
    channel and delivers them locally, so a broadcast reaches members
    connected to any instance.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None):
        super().__init__()
        if redis_client is None:
            redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        if pubsub_client is None:
            # Separate connection for pub/sub (required by Redis)
            pubsub_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            pubsub_client.ping()
            logger.info("Redis pub/sub client connected successfully")
        self.redis_client = redis_client
        self.pubsub_client = pubsub_client
        # {room_address: task}
        self.listeners: Dict[str, asyncio.Task] = {}
        # One worker keeps publishes in submission order
        self._publisher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="redis-publish")

    @staticmethod
    def channel_name(room_address: str) -> str:
        return REDIS_ROOM_CHANNEL.format(room_address=room_address)

    async def subscribe(self, room_address: str, connection_id: str) -> None:
        await super().subscribe(room_address, connection_id)
        task = self.listeners.get(room_address)
        if task is None or task.done():
            ready = asyncio.Event()
            self.listeners[room_address] = asyncio.create_task(self._listen(room_address, ready))
            # The listener must be subscribed before we publish anything for this member
            await ready.wait()
            logger.debug(f"Started Redis pub/sub listener for room {short_address(room_address)}")

    async def _room_emptied(self, room_address: str) -> None:
        await super()._room_emptied(room_address)
        task = self.listeners.pop(room_address, None)
        if task is None:
            return
        if task is asyncio.current_task():
            # A failed delivery emptied the room; the listener loop sees it is no longer registered and exits
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Cancelled pub/sub task for room {short_address(room_address)}")

    async def broadcast(self, room_address: str, event: str, data: Any, exclude: Optional[str] = None) -> None:
        envelope = json.dumps({"event": event, "data": data, "exclude": exclude})
        channel = self.channel_name(room_address)
        loop = asyncio.get_running_loop()
        subscribers = await loop.run_in_executor(self._publisher, self.redis_client.publish, channel, envelope)
        logger.debug(f"Published {event} to channel for room {short_address(room_address)}, {subscribers} subscribers")

    async def _listen(self, room_address: str, ready: asyncio.Event) -> None:
        """Background task: Redis channel -> local subscribers."""
        loop = asyncio.get_running_loop()
        pubsub = None
        try:
            pubsub = self.pubsub_client.pubsub()
            await loop.run_in_executor(None, pubsub.subscribe, self.channel_name(room_address))
            ready.set()

            def get_message():
                return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)

            while self.listeners.get(room_address) is asyncio.current_task():
                message = await loop.run_in_executor(None, get_message)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    envelope = json.loads(message["data"])
                    frame = encode_frame(envelope["event"], envelope.get("data"))
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.error(f"Error parsing message from Redis for room {short_address(room_address)}: {e}")
                    continue
                await self.deliver(room_address, frame, envelope.get("exclude"))
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for room {short_address(room_address)}")
            raise
        except Exception as e:
            logger.error(f"Error in Redis listener for room {short_address(room_address)}: {e}", exc_info=True)
        finally:
            ready.set()
            if pubsub is not None:
                try:
                    pubsub.close()
                except Exception as e:
                    logger.error(f"Error closing pub/sub for room {short_address(room_address)}: {e}")

    async def close(self) -> None:
        for room_address in list(self.listeners):
            task = self.listeners.pop(room_address)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._publisher.shutdown(wait=False)
        await super().close()


def create_broadcaster(backend_name: str) -> LocalBroadcaster:
    if backend_name == "memory":
        return LocalBroadcaster()
    if backend_name == "redis":
        return RedisBroadcaster()
    raise ValueError(f"Unknown broadcast backend: {backend_name!r}")
