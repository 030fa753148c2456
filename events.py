"""Board change notifications over Redis pub/sub.

After every successful mutation the API publishes a small ``board_update``
message on ``clinic:<clinic_id>:updates`` so that dashboards or workers can
react without waiting for their next poll.  Redis is optional: without
``REDIS_URL`` publishing is a no-op, and a Redis failure never fails the
mutation that triggered it.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import redis

from models import utcnow

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")


def channel_for(clinic_id: str) -> str:
    return f"clinic:{clinic_id}:updates"


class BoardEvents:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: Optional[str] = REDIS_URL) -> "BoardEvents":
        if not url:
            return cls(None)
        try:
            client = redis.from_url(url, decode_responses=True)
            client.ping()
        except redis.RedisError as e:
            logger.warning("Redis connection failed, board notifications disabled: %s", e)
            return cls(None)
        logger.info("Publishing board updates to Redis")
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def publish(self, clinic_id: str, action: str, entry_id: Optional[str] = None) -> None:
        if self.client is None:
            return
        message: Dict[str, Any] = {
            "type": "board_update",
            "clinic_id": clinic_id,
            "entry_id": entry_id,
            "action": action,
            "timestamp": utcnow().isoformat(),
        }
        try:
            self.client.publish(channel_for(clinic_id), json.dumps(message))
        except redis.RedisError as e:
            logger.warning("Redis publish error: %s", e)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
