import json
import logging
from datetime import datetime, timezone


logging.basicConfig(level=logging.INFO)

logger = logging.getLogger("adaptive_escore")


def log_event(event: str, *, level: int = logging.INFO, **fields):
    """Emit one JSON line per event. Fields must be JSON-serializable (default=str otherwise)."""
    payload = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **fields,
    }

    logger.log(level, json.dumps(payload, default=str))
