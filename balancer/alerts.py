"""
Admission control for inbound change notifications.

Alerts arrive at-least-once and possibly out of order. The gate drops
irrelevant, duplicate, stale and non-urgent alerts and records every admitted
fingerprint in the AlertLedger before the corrective cycle starts.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from . import config
from .utils import utc_now

logger = logging.getLogger(__name__)


class AlertKind(Enum):
    """Kinds of notifications published on the alert feed."""
    GOVERNANCE_RATIO_UPDATE = "GOVERNANCE_RATIO_UPDATE"
    BALANCING_ALERT = "BALANCING_ALERT"
    BALANCING_COMPLETE = "BALANCING_COMPLETE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AlertKind":
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN


# Kinds this engine acts on, mapped to whether they need the urgency flag
ACTIONABLE_KINDS = {
    AlertKind.GOVERNANCE_RATIO_UPDATE: True,
    AlertKind.BALANCING_ALERT: False,
}


def alert_fingerprint(kind: AlertKind, effective_timestamp: datetime, payload: Dict[str, Any]) -> str:
    """Content-derived identifier of an alert."""
    canonical = json.dumps(
        {
            "kind": kind.value,
            "effective_timestamp": effective_timestamp.isoformat(),
            "payload": payload,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AlertRecord:
    fingerprint: str
    kind: AlertKind
    effective_timestamp: datetime
    requires_immediate_rebalance: bool
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)
    sequence_number: Optional[int] = field(default=None, compare=False)

    @classmethod
    def create(cls,
               kind: AlertKind,
               effective_timestamp: datetime,
               payload: Optional[Dict[str, Any]] = None,
               requires_immediate_rebalance: bool = False,
               sequence_number: Optional[int] = None) -> "AlertRecord":
        payload = payload or {}
        return cls(
            fingerprint=alert_fingerprint(kind, effective_timestamp, payload),
            kind=kind,
            effective_timestamp=effective_timestamp,
            requires_immediate_rebalance=requires_immediate_rebalance,
            payload=payload,
            sequence_number=sequence_number,
        )


class AlertLedger:
    """
    Append-only record of fingerprints already acted upon.

    Entries older than the retention window are pruned; the gate's age filter
    already rejects anything that old. When ``path`` is set the ledger is
    persisted as JSON so a restart does not replay admitted alerts.
    """

    def __init__(self,
                 retention: timedelta = timedelta(seconds=2 * config.ALERT_MAX_AGE_SECONDS),
                 path: Optional[str] = None):
        self.retention = retention
        self.path = path
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        if path and os.path.exists(path):
            self._load()

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, fingerprint: str, now: Optional[datetime] = None) -> bool:
        """
        Record a fingerprint. Returns False if it was already present.

        If the ledger file cannot be written the entry is rolled back and the
        OSError propagates, so a redelivery of the same alert is not treated
        as a duplicate.
        """
        now = now or utc_now()
        with self._lock:
            if fingerprint in self._entries:
                return False
            self._entries[fingerprint] = now
            self._prune(now)
            try:
                self._save()
            except OSError:
                del self._entries[fingerprint]
                raise
        return True

    def prune(self, now: Optional[datetime] = None):
        with self._lock:
            self._prune(now or utc_now())

    def _prune(self, now: datetime):
        cutoff = now - self.retention
        expired = [fp for fp, seen in self._entries.items() if seen < cutoff]
        for fp in expired:
            del self._entries[fp]

    def _load(self):
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._entries = {fp: datetime.fromisoformat(ts) for fp, ts in data.items()}
            logger.info(f"Loaded {len(self._entries)} alert fingerprints from {self.path}")
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Could not read alert ledger {self.path}, starting empty: {e}")
            self._entries = {}

    def _save(self):
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({fp: ts.isoformat() for fp, ts in self._entries.items()}, f)
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)


@dataclass(frozen=True)
class GateDecision:
    admitted: bool
    reason: str
    alert: AlertRecord


class AlertGate:
    """
    RECEIVED -> {DROPPED | ADMITTED} state machine for inbound alerts.

    Rules are applied in order: irrelevant kind, duplicate fingerprint,
    stale effective timestamp, missing urgency flag.
    """

    IRRELEVANT_KIND = "IRRELEVANT_KIND"
    DUPLICATE = "DUPLICATE"
    STALE = "STALE"
    NOT_URGENT = "NOT_URGENT"
    ADMITTED = "ADMITTED"

    def __init__(self,
                 ledger: Optional[AlertLedger] = None,
                 max_age_seconds: float = config.ALERT_MAX_AGE_SECONDS,
                 clock: Callable[[], datetime] = utc_now):
        self.max_age = timedelta(seconds=max_age_seconds)
        self.ledger = ledger if ledger is not None else AlertLedger(retention=2 * self.max_age)
        self.clock = clock
        self._lock = threading.Lock()

    def admit(self, alert: AlertRecord, now: Optional[datetime] = None) -> GateDecision:
        now = now or self.clock()
        with self._lock:
            decision = self._decide(alert, now)
            if decision.admitted:
                # record before acting so a crash mid-cycle cannot replay it
                try:
                    self.ledger.record(alert.fingerprint, now)
                except OSError as e:
                    # still act; a redelivery is admitted again
                    logger.error(f"❌ Could not persist alert {alert.fingerprint[:12]}: {e}")

        short = alert.fingerprint[:12]
        if decision.admitted:
            logger.info(f"🚨 Alert {short} ({alert.kind.value}) admitted")
        else:
            logger.info(f"⏭️  Alert {short} ({alert.kind.value}) dropped: {decision.reason}")
        return decision

    def _decide(self, alert: AlertRecord, now: datetime) -> GateDecision:
        if alert.kind not in ACTIONABLE_KINDS:
            return GateDecision(False, self.IRRELEVANT_KIND, alert)
        if alert.fingerprint in self.ledger:
            return GateDecision(False, self.DUPLICATE, alert)
        if now - alert.effective_timestamp > self.max_age:
            return GateDecision(False, self.STALE, alert)
        if ACTIONABLE_KINDS[alert.kind] and not alert.requires_immediate_rebalance:
            return GateDecision(False, self.NOT_URGENT, alert)
        return GateDecision(True, self.ADMITTED, alert)
