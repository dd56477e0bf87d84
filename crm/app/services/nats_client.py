"""
Pipeline CRM NATS Client Service
JetStream event publishing for deal, forecast and compliance events
"""

import json
from typing import Dict, Any, Optional
import nats
from nats.js import JetStreamContext
from nats.js.api import StreamConfig
from nats.js.errors import NotFoundError
import structlog

from ..core.clock import utcnow

logger = structlog.get_logger()


STREAMS = [
    {
        "name": "CRM_DEALS",
        "subjects": ["deals.created", "deals.updated", "deals.stage_changed", "deals.won", "deals.lost"],
        "description": "Deal lifecycle events"
    },
    {
        "name": "CRM_FORECASTS",
        "subjects": ["forecasts.calculated", "forecasts.predicted", "forecasts.snapshotted"],
        "description": "Forecast recalculation and snapshot events"
    },
    {
        "name": "CRM_COMPLIANCE",
        "subjects": ["compliance.retention_completed", "compliance.dsr_checked"],
        "description": "Retention and data subject request job events"
    },
]


class NATSClient:
    """NATS JetStream client for event streaming"""

    def __init__(self, nats_url: str):
        self.nats_url = nats_url
        self.nc: Optional[nats.NATS] = None
        self.js: Optional[JetStreamContext] = None
        self.streams_initialized = False

    async def connect(self):
        """Connect to NATS server"""
        try:
            self.nc = await nats.connect(self.nats_url)
            self.js = self.nc.jetstream()
            logger.info("Connected to NATS", url=self.nats_url)

            await self.initialize_streams()

        except Exception as e:
            logger.error("Failed to connect to NATS", error=str(e), url=self.nats_url)
            raise

    async def disconnect(self):
        """Disconnect from NATS server"""
        if self.nc:
            await self.nc.close()
            logger.info("Disconnected from NATS")

    async def initialize_streams(self):
        """Create the CRM streams if they do not exist yet"""
        if self.streams_initialized:
            return

        for stream_config in STREAMS:
            try:
                try:
                    await self.js.stream_info(stream_config["name"])
                    logger.debug("Stream already exists", stream=stream_config["name"])
                except NotFoundError:
                    config = StreamConfig(
                        name=stream_config["name"],
                        subjects=stream_config["subjects"],
                        description=stream_config["description"],
                        max_age=7 * 24 * 60 * 60,  # 7 days retention
                        max_bytes=100 * 1024 * 1024,  # 100MB max
                    )
                    await self.js.add_stream(config)
                    logger.info("Created stream", stream=stream_config["name"], subjects=stream_config["subjects"])

            except Exception as e:
                logger.error("Failed to initialize stream", stream=stream_config["name"], error=str(e))

        self.streams_initialized = True

    async def publish_event(self, subject: str, data: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        """Publish an event to JetStream"""
        try:
            event_data = {
                "timestamp": utcnow().isoformat(),
                "data": data
            }

            ack = await self.js.publish(
                subject=subject,
                payload=json.dumps(event_data, default=str).encode(),
                headers=headers
            )

            logger.info("Event published", subject=subject, sequence=ack.seq)

            return ack

        except Exception as e:
            logger.error("Failed to publish event", subject=subject, error=str(e))
            raise

    async def health_check(self) -> bool:
        """Check NATS connection health"""
        try:
            if not self.nc or not self.nc.is_connected:
                return False

            await self.nc.flush(timeout=2)
            return True

        except Exception as e:
            logger.warning("NATS health check failed", error=str(e))
            return False


# Global NATS client instance
nats_client: Optional[NATSClient] = None


async def get_nats_client() -> NATSClient:
    """Get the global NATS client instance"""
    if nats_client is None:
        raise RuntimeError("NATS client not initialized")
    return nats_client


async def initialize_nats(nats_url: str):
    """Initialize the global NATS client"""
    global nats_client
    client = NATSClient(nats_url)
    await client.connect()
    nats_client = client


async def close_nats():
    """Close the global NATS client"""
    global nats_client
    if nats_client:
        await nats_client.disconnect()
        nats_client = None


async def publish_event(subject: str, data: Dict[str, Any]):
    """Best-effort publish: a missing or failing bus never fails the caller"""
    try:
        client = await get_nats_client()
        await client.publish_event(subject, data)
    except Exception as e:
        logger.warning("Failed to publish event", subject=subject, error=str(e))
