"""
Alert feed backed by a consensus topic on the mirror node.

Messages are base64-encoded JSON, either wrapped in an ``hcs-10`` envelope
(``{"p": "hcs-10", "op": ..., "data": {...}}``) or published as a bare object
carrying a ``type`` field. Anything that is not JSON becomes an UNKNOWN alert;
free text is never interpreted.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from balancer import config
from balancer.alerts import AlertKind, AlertRecord

from .mirror_client import MirrorNodeClient

logger = logging.getLogger(__name__)


def parse_consensus_timestamp(value: str) -> datetime:
    """Convert a ``seconds.nanos`` consensus timestamp to a UTC datetime."""
    try:
        seconds = Decimal(value)
    except (InvalidOperation, TypeError):
        seconds = Decimal("0")
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(
        microsecond=int((seconds % 1) * 1_000_000)
    )


def parse_iso_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_message(message: Dict[str, Any]) -> AlertRecord:
    """Turn one mirror node topic message into an AlertRecord."""
    sequence_number = message.get("sequence_number")
    consensus_at = parse_consensus_timestamp(message.get("consensus_timestamp") or "0")

    raw = message.get("message")
    content = None
    if isinstance(raw, str):
        try:
            content = json.loads(base64.b64decode(raw, validate=True))
        except (binascii.Error, TypeError, ValueError):
            content = None

    if not isinstance(content, dict):
        return AlertRecord.create(
            AlertKind.UNKNOWN,
            consensus_at,
            payload={"raw": raw if isinstance(raw, str) else repr(raw)},
            sequence_number=sequence_number,
        )

    data = content.get("data") if content.get("p") == "hcs-10" else content
    if not isinstance(data, dict):
        data = {}

    kind = AlertKind.parse(data.get("type"))
    effective = parse_iso_timestamp(data.get("effectiveTimestamp") or data.get("timestamp") or "")
    return AlertRecord.create(
        kind,
        effective or consensus_at,
        payload=data,
        requires_immediate_rebalance=data.get("requiresImmediateRebalance") is True,
        sequence_number=sequence_number,
    )


class TopicAlertFeed:
    """
    Polling alert feed over a mirror node topic.

    The cursor only lives in memory, so a restart redelivers everything; the
    AlertGate's ledger and age filter absorb the replays.
    """

    def __init__(self, client: MirrorNodeClient, topic_id: str = None, page_size: int = 100):
        self.client = client
        self.topic_id = topic_id or config.ALERT_TOPIC_ID
        self.page_size = page_size
        self.last_sequence = 0

    def poll(self) -> List[AlertRecord]:
        """Fetch every message published since the last poll."""
        alerts = []
        while True:
            cursor = self.last_sequence
            messages = self.client.get_topic_messages(self.topic_id, self.last_sequence, self.page_size)
            for message in messages:
                alerts.append(decode_message(message))
                seq = message.get("sequence_number")
                if isinstance(seq, int) and seq > self.last_sequence:
                    self.last_sequence = seq
            if len(messages) < self.page_size or self.last_sequence == cursor:
                break
        if alerts:
            logger.info(f"📡 Received {len(alerts)} message(s) from topic {self.topic_id}")
        return alerts
