"""
Tests for compliance reporting and key-age monitoring.
"""
from datetime import datetime, timedelta, timezone

import pytest

from navigator_phi.audit.compliance import (
    ComplianceReporter,
    RotationMonitor,
    RotationPolicy,
)
from navigator_phi.audit.events import AuditAction, AuditEvent, RiskLevel
from navigator_phi.vault.ledger import KeyType

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
PHI = KeyType.PHI_ENCRYPTION_KEY
SESSION = KeyType.SESSION_SECRET


def event(action=AuditAction.PHI_READ, actor="dr-smith", at=T0, success=True, cid="req-1", **kw):
    return AuditEvent(
        action=action,
        resource_type=kw.pop("resource_type", "patients"),
        resource_id=kw.pop("resource_id", 1),
        actor_id=actor,
        success=success,
        correlation_id=cid,
        timestamp=at,
        **kw,
    )


@pytest.fixture
def reporter(audit_store):
    return ComplianceReporter(audit_store, burst_threshold=10, burst_window=timedelta(minutes=1))


def store_events(audit_store, events):
    audit_store.events.extend(events)


# --- Test Reporting ---

class TestEventCounts:
    """Counts grouped by several dimensions."""

    async def test_counts(self, reporter, audit_store):
        store_events(audit_store, [
            event(),
            event(),
            event(AuditAction.PHI_WRITE),
            event(AuditAction.KEY_ROTATION_STARTED, resource_type="encryption_key"),
            event(at=T0 + timedelta(days=1)),
        ])
        assert await reporter.event_counts() == {
            "KEY_ROTATION_STARTED": 1, "PHI_READ": 3, "PHI_WRITE": 1,
        }
        assert await reporter.event_counts(by="resource_type") == {
            "encryption_key": 1, "patients": 4,
        }
        assert await reporter.event_counts(by="day") == {
            "2026-03-02": 4, "2026-03-03": 1,
        }
        window = await reporter.event_counts(T0, T0 + timedelta(hours=1))
        assert sum(window.values()) == 4

    async def test_unknown_grouping(self, reporter):
        with pytest.raises(ValueError):
            await reporter.event_counts(by="color")

    async def test_success_ratio(self, reporter, audit_store):
        assert await reporter.success_ratio() == 1.0
        store_events(audit_store, [event(), event(), event(), event(success=False)])
        assert await reporter.success_ratio() == 0.75

    async def test_phi_access_coverage(self, reporter, audit_store):
        assert await reporter.phi_access_coverage() == 1.0
        store_events(audit_store, [
            event(),
            event(actor=None),
            event(cid=None),
            event(),
            event(AuditAction.KEY_ROTATION_STARTED, actor=None, resource_type="encryption_key"),
        ])
        assert await reporter.phi_access_coverage() == 0.5


class TestAnomalies:
    """Suspicious patterns ordered by risk."""

    async def test_failure_rate(self, reporter, audit_store):
        store_events(audit_store, [event(actor="mallory", success=(n < 3)) for n in range(8)])
        anomalies = await reporter.detect_anomalies()
        failure = next(a for a in anomalies if a.kind == "failure_rate")
        assert failure.actor_id == "mallory"
        assert failure.risk is RiskLevel.MEDIUM
        assert failure.count == 5

    async def test_few_events_ignored(self, reporter, audit_store):
        store_events(audit_store, [event(success=False) for _ in range(3)])
        kinds = [a.kind for a in await reporter.detect_anomalies()]
        assert "failure_rate" not in kinds

    async def test_read_burst(self, reporter, audit_store):
        store_events(audit_store, [
            event(actor="bulk-reader", at=T0 + timedelta(seconds=n)) for n in range(25)
        ])
        # spread out reads do not count
        store_events(audit_store, [
            event(actor="normal", at=T0 + timedelta(minutes=5 * n)) for n in range(25)
        ])
        anomalies = await reporter.detect_anomalies()
        bursts = [a for a in anomalies if a.kind == "phi_read_burst"]
        assert len(bursts) == 1
        assert bursts[0].actor_id == "bulk-reader"
        assert bursts[0].risk is RiskLevel.MEDIUM
        assert bursts[0].count == 25

    async def test_decryption_failures_sorted(self, reporter, audit_store):
        store_events(audit_store, [
            event(AuditAction.DECRYPTION_FAILURE, actor="svc-a", success=False)
            for _ in range(10)
        ])
        store_events(audit_store, [
            event(AuditAction.DECRYPTION_FAILURE, actor="svc-b", success=False)
        ])
        anomalies = await reporter.detect_anomalies()
        decrypt = [a for a in anomalies if a.kind == "decryption_failure"]
        assert [(a.actor_id, a.risk) for a in decrypt] == [
            ("svc-a", RiskLevel.HIGH), ("svc-b", RiskLevel.LOW),
        ]
        assert anomalies[0].risk is RiskLevel.HIGH

    async def test_report(self, reporter, audit, audit_store):
        for n in range(3):
            audit.record(event(resource_id=n))
        await audit.flush()
        report = await reporter.report()
        assert report["events_by_action"] == {"PHI_READ": 3}
        assert report["chain_intact"] is True
        assert report["phi_access_coverage"] == 1.0

    async def test_integrity_detects_edit(self, reporter, audit, audit_store):
        for n in range(3):
            audit.record(event(resource_id=n))
        await audit.flush()
        tampered = audit_store.events[1]
        audit_store.events[1] = AuditEvent.from_dict({**tampered.to_dict(), "actor_id": "x"})
        assert await reporter.verify_integrity() == (False, 2)


# --- Test Key Age ---

class TestRotationMonitor:
    """Key ages against rotation policy."""

    async def complete_rotation(self, ledger, key_type=PHI):
        record = await ledger.begin(key_type, "scheduled", "aaaa")
        return await ledger.complete(record.id, "bbbb", 0)

    async def test_never_rotated_is_overdue(self, ledger):
        status = await RotationMonitor(ledger).status(PHI)
        assert status.status == "overdue"
        assert status.last_rotation is None
        assert status.key_age_days == 366

    @pytest.mark.parametrize("age,expected", [
        (10, "ok"),
        (334, "ok"),
        (335, "warning"),
        (358, "warning"),
        (362, "critical"),
        (365, "critical"),
        (366, "overdue"),
    ])
    async def test_phi_thresholds(self, ledger, age, expected):
        done = await self.complete_rotation(ledger)
        status = await RotationMonitor(ledger).status(PHI, now=done.completed_at + timedelta(days=age))
        assert status.status == expected
        assert status.key_age_days == age
        assert status.days_until_rotation == 365 - age

    async def test_session_policy(self, ledger):
        done = await self.complete_rotation(ledger, SESSION)
        status = await RotationMonitor(ledger).status(
            SESSION, now=done.completed_at + timedelta(days=80),
        )
        assert status.status == "warning"
        assert status.days_until_rotation == 10

    async def test_custom_policy(self, ledger):
        monitor = RotationMonitor(ledger, policies=(RotationPolicy(PHI, 30, (5,), 1),))
        done = await self.complete_rotation(ledger)
        status = await monitor.status(PHI, now=done.completed_at + timedelta(days=26))
        assert status.status == "warning"

    async def test_check_all_audits_overdue(self, ledger, audit, audit_store):
        done = await self.complete_rotation(ledger, SESSION)
        monitor = RotationMonitor(ledger, audit)
        results = await monitor.check_all(now=done.completed_at + timedelta(days=88))
        assert {r.key_type: r.status for r in results} == {
            PHI: "overdue", SESSION: "critical",
        }
        await audit.flush()
        overdue = [e for e in audit_store.events if e.action is AuditAction.KEY_ROTATION_OVERDUE]
        assert {e.metadata["key_type"]: e.success for e in overdue} == {
            "PHI_ENCRYPTION_KEY": False, "SESSION_SECRET": True,
        }
        assert results[0].to_dict()["last_rotation"] is None
