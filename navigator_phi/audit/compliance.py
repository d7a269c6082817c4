"""
Compliance — reporting over the audit trail and key-age monitoring.

``ComplianceReporter`` answers questions asked during HIPAA reviews: who
touched PHI, how often access failed, whether every access is attributable
to an actor and an operation, and which patterns look anomalous.

``RotationMonitor`` compares the age of each key with its rotation policy
and raises audit events and alerts when a rotation is critical or overdue.
Run ``check_all()`` from a daily scheduled job.
"""
import logging
from collections import Counter, defaultdict, deque
from typing import Any, Optional
from datetime import datetime, timedelta
from dataclasses import dataclass, field

from ..vault.ledger import KeyType, RotationLedger, utcnow
from .events import (
    PHI_ACTIONS,
    AuditAction,
    AuditEvent,
    RiskLevel,
    verify_chain,
)

logger = logging.getLogger("navigator.audit")

_GROUPINGS = {
    "action": lambda e: e.action.value,
    "resource_type": lambda e: e.resource_type,
    "severity": lambda e: e.severity.value,
    "day": lambda e: e.timestamp.date().isoformat(),
    "actor": lambda e: e.actor_id or "unknown",
}


@dataclass(frozen=True)
class Anomaly:
    """A suspicious pattern found in the audit trail."""

    kind: str
    risk: RiskLevel
    actor_id: Optional[str]
    count: int
    detail: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "risk": self.risk.value,
            "actor_id": self.actor_id,
            "count": self.count,
            "detail": self.detail,
        }


def _risk_for(value: float, thresholds: tuple[float, float, float]) -> Optional[RiskLevel]:
    low, medium, high = thresholds
    if value >= high:
        return RiskLevel.HIGH
    if value >= medium:
        return RiskLevel.MEDIUM
    if value >= low:
        return RiskLevel.LOW
    return None


class ComplianceReporter:
    """Read-only queries over an audit store.

    Args:
        store: AuditStore to query.
        failure_min_events: Events an actor needs before its failure rate counts.
        failure_rates: Failure ratios for LOW, MEDIUM and HIGH risk.
        burst_threshold: PHI reads by one actor inside ``burst_window`` that
            count as a LOW risk burst (2x MEDIUM, 4x HIGH).
        burst_window: Sliding window for read bursts.
    """

    def __init__(
        self,
        store: Any,
        *,
        failure_min_events: int = 5,
        failure_rates: tuple[float, float, float] = (0.25, 0.5, 0.75),
        burst_threshold: int = 50,
        burst_window: timedelta = timedelta(minutes=5),
    ):
        self._store = store
        self.failure_min_events = failure_min_events
        self.failure_rates = failure_rates
        self.burst_threshold = burst_threshold
        self.burst_window = burst_window

    async def _events(
        self, start: Optional[datetime], end: Optional[datetime]
    ) -> list[AuditEvent]:
        return await self._store.query(start=start, end=end)

    async def event_counts(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        by: str = "action",
    ) -> dict[str, int]:
        """Count events in ``[start, end)`` grouped by action, resource_type,
        severity, day or actor."""
        try:
            key = _GROUPINGS[by]
        except KeyError:
            raise ValueError(
                f"Unknown grouping {by!r}, expected one of {sorted(_GROUPINGS)}"
            ) from None
        counts = Counter(key(e) for e in await self._events(start, end))
        return dict(sorted(counts.items()))

    async def success_ratio(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> float:
        events = await self._events(start, end)
        if not events:
            return 1.0
        return sum(1 for e in events if e.success) / len(events)

    async def phi_access_coverage(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> float:
        """Share of PHI access events attributable to an actor and an operation.

        An event is attributable when it carries both ``actor_id`` and
        ``correlation_id``. Returns 1.0 when there was no PHI access.
        """
        phi = [e for e in await self._events(start, end) if e.action in PHI_ACTIONS]
        if not phi:
            return 1.0
        attributable = sum(1 for e in phi if e.actor_id and e.correlation_id)
        return attributable / len(phi)

    async def detect_anomalies(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[Anomaly]:
        events = await self._events(start, end)
        anomalies = (
            self._failure_rates(events)
            + self._read_bursts(events)
            + self._decryption_failures(events)
        )
        order = {RiskLevel.HIGH: 0, RiskLevel.MEDIUM: 1, RiskLevel.LOW: 2}
        anomalies.sort(key=lambda a: (order[a.risk], a.kind, a.actor_id or ""))
        return anomalies

    def _failure_rates(self, events: list[AuditEvent]) -> list[Anomaly]:
        totals: Counter = Counter()
        failures: Counter = Counter()
        for event in events:
            if event.actor_id is None:
                continue
            totals[event.actor_id] += 1
            if not event.success:
                failures[event.actor_id] += 1
        found = []
        for actor, total in totals.items():
            if total < self.failure_min_events:
                continue
            rate = failures[actor] / total
            risk = _risk_for(rate, self.failure_rates)
            if risk is not None:
                found.append(Anomaly(
                    kind="failure_rate", risk=risk, actor_id=actor,
                    count=failures[actor],
                    detail={"total": total, "rate": round(rate, 3)},
                ))
        return found

    def _read_bursts(self, events: list[AuditEvent]) -> list[Anomaly]:
        reads: dict[str, list[datetime]] = defaultdict(list)
        for event in events:
            if event.action is AuditAction.PHI_READ and event.actor_id:
                reads[event.actor_id].append(event.timestamp)
        found = []
        base = self.burst_threshold
        for actor, stamps in reads.items():
            stamps.sort()
            window: deque = deque()
            peak = 0
            for stamp in stamps:
                window.append(stamp)
                while stamp - window[0] > self.burst_window:
                    window.popleft()
                peak = max(peak, len(window))
            risk = _risk_for(peak, (base, base * 2, base * 4))
            if risk is not None:
                found.append(Anomaly(
                    kind="phi_read_burst", risk=risk, actor_id=actor, count=peak,
                    detail={"window_seconds": int(self.burst_window.total_seconds())},
                ))
        return found

    def _decryption_failures(self, events: list[AuditEvent]) -> list[Anomaly]:
        per_actor: Counter = Counter(
            e.actor_id for e in events if e.action is AuditAction.DECRYPTION_FAILURE
        )
        found = []
        for actor, count in per_actor.items():
            risk = _risk_for(count, (1, 3, 10))
            found.append(Anomaly(
                kind="decryption_failure", risk=risk, actor_id=actor, count=count,
            ))
        return found

    async def verify_integrity(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> tuple[bool, Optional[int]]:
        """Check the hash chain of the stored events."""
        events = [e for e in await self._events(start, end) if e.sequence is not None]
        return verify_chain(events)

    async def report(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> dict:
        intact, broken_at = await self.verify_integrity(start, end)
        return {
            "window": {
                "start": start.isoformat() if start else None,
                "end": end.isoformat() if end else None,
            },
            "events_by_action": await self.event_counts(start, end, by="action"),
            "events_by_severity": await self.event_counts(start, end, by="severity"),
            "success_ratio": round(await self.success_ratio(start, end), 4),
            "phi_access_coverage": round(await self.phi_access_coverage(start, end), 4),
            "anomalies": [a.to_dict() for a in await self.detect_anomalies(start, end)],
            "chain_intact": intact,
            "chain_broken_at": broken_at,
        }


# ---------------------------------------------------------------------------
# Key age monitoring
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RotationPolicy:
    key_type: KeyType
    max_age_days: int
    warning_days: tuple[int, ...]
    critical_days: int


DEFAULT_POLICIES = (
    RotationPolicy(KeyType.PHI_ENCRYPTION_KEY, 365, (30, 14, 7), 3),
    RotationPolicy(KeyType.SESSION_SECRET, 90, (14, 7), 3),
)


@dataclass(frozen=True)
class KeyRotationStatus:
    key_type: KeyType
    status: str  # ok | warning | critical | overdue
    last_rotation: Optional[datetime]
    key_age_days: int
    days_until_rotation: int

    def to_dict(self) -> dict:
        return {
            "key_type": self.key_type.value,
            "status": self.status,
            "last_rotation": self.last_rotation.isoformat() if self.last_rotation else None,
            "key_age_days": self.key_age_days,
            "days_until_rotation": self.days_until_rotation,
        }


class RotationMonitor:
    """Compares key ages with rotation policies."""

    def __init__(
        self,
        ledger: RotationLedger,
        audit: Any = None,
        policies: tuple[RotationPolicy, ...] = DEFAULT_POLICIES,
    ):
        self._ledger = ledger
        self._audit = audit
        self._policies = {p.key_type: p for p in policies}

    async def status(
        self, key_type: KeyType, now: Optional[datetime] = None
    ) -> KeyRotationStatus:
        policy = self._policies[KeyType(key_type)]
        now = now or utcnow()
        record = await self._ledger.last_completed(policy.key_type)
        if record is None or record.completed_at is None:
            # never rotated: treat as overdue
            last, age = None, policy.max_age_days + 1
        else:
            last = record.completed_at
            age = (now - last).days
        days_until = policy.max_age_days - age
        if age > policy.max_age_days:
            status = "overdue"
        elif days_until <= policy.critical_days:
            status = "critical"
        elif days_until <= max(policy.warning_days, default=0):
            status = "warning"
        else:
            status = "ok"
        return KeyRotationStatus(policy.key_type, status, last, age, days_until)

    async def check_all(self, now: Optional[datetime] = None) -> list[KeyRotationStatus]:
        """Evaluate every policy; critical and overdue keys are audited."""
        results = []
        for key_type in self._policies:
            result = await self.status(key_type, now)
            results.append(result)
            if result.status in ("critical", "overdue"):
                logger.error(
                    "%s rotation %s: %d day(s) old, %d day(s) until due",
                    key_type.value, result.status.upper(),
                    result.key_age_days, result.days_until_rotation,
                )
                if self._audit is not None:
                    self._audit.record(
                        AuditEvent(
                            action=AuditAction.KEY_ROTATION_OVERDUE,
                            resource_type="encryption_key"
                            if key_type is KeyType.PHI_ENCRYPTION_KEY
                            else "session_secret",
                            success=result.status != "overdue",
                            metadata={
                                "key_type": key_type.value,
                                "status": result.status,
                                "key_age_days": result.key_age_days,
                                "days_until_rotation": result.days_until_rotation,
                            },
                        )
                    )
            elif result.status == "warning":
                logger.warning(
                    "%s rotation due in %d day(s)",
                    key_type.value, result.days_until_rotation,
                )
        return results
