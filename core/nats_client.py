"""
NATS JetStream Client for Python Microservices

Event bus on nats-py. Publishes ``Event`` envelopes to JetStream (one stream
per subject prefix) and runs durable pull consumers for subscriptions.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import nats
from nats.aio.client import Client as NATS
from nats.errors import TimeoutError as NATSTimeoutError
from nats.js import JetStreamContext

from core.config import InfraConfig


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types published or consumed by the credit ledger"""

    # Credit Events
    CREDIT_ADDED = "credit.added"
    CREDIT_CONSUMED = "credit.consumed"
    CREDIT_TRANSFERRED = "credit.transferred"
    CREDIT_SUBSCRIPTION_GRANTED = "credit.subscription_granted"

    # Promo Code Events
    PROMO_CODE_USED = "promo_code.used"
    PROMO_CODE_CANCELLED = "promo_code.cancelled"

    # Membership Events
    MEMBERSHIP_STATUS_CHANGED = "membership.status_changed"

    # Subscription Events (consumed)
    SUBSCRIPTION_RENEWED = "subscription.renewed"

    # Account Events (consumed)
    USER_DELETED = "user.deleted"


class ServiceSource(Enum):
    """Service sources"""

    CREDIT_SERVICE = "credit_service"
    SUBSCRIPTION_SERVICE = "subscription_service"
    PAYMENT_SERVICE = "payment_service"
    ACCOUNT_SERVICE = "account_service"


class Event:
    """Event model"""

    def __init__(
        self,
        event_type: Union[EventType, str],
        source: Union[ServiceSource, str],
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value if isinstance(event_type, EventType) else event_type
        self.source = source.value if isinstance(source, ServiceSource) else source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id")
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


class NATSEventBus:
    """NATS JetStream event bus on nats-py"""

    def __init__(
        self,
        service_name: str,
        servers: Optional[str] = None,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as the connection name)
            servers: NATS server URL (defaults to InfraConfig.nats_servers)
            config: Optional InfraConfig instance
        """
        config = config or InfraConfig.from_env()

        self.service_name = service_name
        self.servers = servers or config.nats_servers

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._streams: set = set()
        self._subscriptions: Dict[str, bool] = {}  # pattern -> active
        self._subscription_tasks: List[asyncio.Task] = []

        logger.info(f"NATS EventBus initialized: {self.servers}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(servers=[self.servers], name=self.service_name)
            self._js = self._nc.jetstream()
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    @staticmethod
    def _get_stream_name_for_event(event_type: str) -> str:
        """Map an event type to its stream (e.g. credit.added -> credit-stream)"""
        prefix = event_type.split('.')[0]
        return f"{prefix.replace('_', '-')}-stream"

    async def _ensure_stream(self, subject: str):
        prefix = subject.split('.')[0]
        stream_name = self._get_stream_name_for_event(subject)
        if stream_name in self._streams:
            return stream_name
        try:
            await self._js.add_stream(name=stream_name, subjects=[f"{prefix}.>"])
        except Exception as e:
            logger.debug(f"Stream creation note: {e}")
        self._streams.add(stream_name)
        return stream_name

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to NATS JetStream.

        The event type is the subject; the stream is derived from its prefix.
        Returns False instead of raising so publishing never breaks a caller.
        """
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        try:
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()
            stream_name = await self._ensure_stream(event.type)
            ack = await self._js.publish(event.type, data)
            logger.info(f"Published event {event.type} [{event.id}] to stream {stream_name}, seq={ack.seq}")
            return True
        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def subscribe_to_events(
        self, pattern: str, handler: Callable, durable: Optional[str] = None
    ) -> Optional[str]:
        """
        Subscribe to events with a pattern using a durable JetStream pull consumer.

        Args:
            pattern: Subject pattern to subscribe to (e.g., "subscription.renewed")
            handler: Async callback receiving an Event
            durable: Optional durable consumer name
        """
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return None

        self._subscriptions[pattern] = True
        task = asyncio.create_task(self._jetstream_consumer_loop(pattern, handler, durable))
        self._subscription_tasks.append(task)
        logger.info(f"Subscribed to {pattern} (JetStream consumer)")
        return durable or pattern

    async def _jetstream_consumer_loop(self, pattern: str, handler: Callable, durable: Optional[str]):
        consumer_name = durable or f"{self.service_name}-{pattern.replace('.', '-').replace('*', 'all')}"
        try:
            await self._ensure_stream(pattern)
            psub = await self._js.pull_subscribe(pattern.replace("*", ">"), durable=consumer_name)

            while self._subscriptions.get(pattern, False):
                try:
                    messages = await psub.fetch(batch=10, timeout=1)
                except NATSTimeoutError:
                    continue
                except Exception as pull_e:
                    logger.warning(f"Pull error (will retry): {pull_e}")
                    await asyncio.sleep(5)
                    continue

                for msg in messages:
                    try:
                        payload = json.loads(msg.data.decode())
                        if 'type' in payload and 'source' in payload and 'data' in payload:
                            event = Event.from_dict(payload)
                        else:
                            # Raw payload without an envelope
                            event = Event(event_type=msg.subject, source="unknown", data=payload, subject=msg.subject)
                        await handler(event)
                        await msg.ack()
                    except Exception as msg_e:
                        logger.error(f"Error processing message on {msg.subject}: {msg_e}")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"JetStream consumer loop error for {pattern}: {e}")
        finally:
            self._subscriptions[pattern] = False
            logger.info(f"JetStream consumer stopped: {consumer_name}")

    async def close(self):
        """Stop consumers and drain the connection"""
        for pattern in list(self._subscriptions.keys()):
            self._subscriptions[pattern] = False

        for task in self._subscription_tasks:
            if not task.done():
                task.cancel()

        if self._nc is not None:
            await self._nc.drain()
            self._nc = None
            self._js = None

        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._nc is not None and self._nc.is_connected


# Singleton instance
_event_bus: Optional[NATSEventBus] = None


async def get_event_bus(
    service_name: str,
    servers: Optional[str] = None,
) -> NATSEventBus:
    """
    Get or create event bus instance.

    Args:
        service_name: Name of the service using the event bus
        servers: Optional NATS server URL override

    Returns:
        Connected NATSEventBus instance
    """
    global _event_bus

    if _event_bus is None:
        _event_bus = NATSEventBus(service_name=service_name, servers=servers)
        await _event_bus.connect()

    return _event_bus
