"""
Tests for PHI key rotation.

Tests cover:
- Full rotation of every registered column and the ledger record
- Idempotent re-runs and dry runs
- Single-flight enforcement
- Undecryptable rows, checkpoints and resume
- Cancellation, legacy envelope upgrade, concurrent application writes
- Audit trail of a rotation
- Ending the grace window and re-hashing search columns
"""
import asyncio

import pytest

from navigator_phi.audit.events import AuditAction, verify_chain
from navigator_phi.exceptions import (
    DecryptionError,
    PartialRotationFailure,
    RotationCancelled,
    RotationError,
    RotationInProgressError,
    ValidationError,
)
from navigator_phi.vault.config import fingerprint
from navigator_phi.vault.crypto import (
    EncryptedValue,
    _cipher,
    decrypt_field,
    encrypt_field,
    search_hash,
)
from navigator_phi.vault.key_rotation import (
    RotationOrchestrator,
    RotationState,
    RotationStateMachine,
)
from navigator_phi.vault.ledger import KeyType, RotationStatus
from navigator_phi.vault.registry import FieldRegistry, FieldRegistryEntry
from conftest import KEY_A1, KEY_B2, KEY_C3, legacy_v1, seed_column

PHI = KeyType.PHI_ENCRYPTION_KEY
SSN = ("patients", "patient_ssn_encrypted")
NOTES = ("clinical_sessions_hipaa", "session_notes_encrypted")


@pytest.fixture
def ssn_repo(repositories):
    return repositories.get(*SSN)


@pytest.fixture
def notes_repo(repositories):
    return repositories.get(*NOTES)


@pytest.fixture
def seeded(ssn_repo, notes_repo, key_a1):
    """1000 SSNs and 250 session notes under key A1."""
    seed_column(ssn_repo, 1000, key_a1, prefix="ssn")
    seed_column(notes_repo, 250, key_a1, prefix="note")
    # NULLs are never touched
    ssn_repo.rows[1001] = None
    return ssn_repo, notes_repo


def assert_all_under(repo, key, old_key=None):
    for pk, stored in repo.rows.items():
        if stored is None:
            continue
        assert EncryptedValue.parse(stored).is_current
        assert decrypt_field(stored, key)
        if old_key is not None:
            with pytest.raises(DecryptionError):
                decrypt_field(stored, old_key)


# --- Test State Machine ---

class TestStateMachine:
    """Stages only move forward along legal transitions."""

    def test_phi_path(self):
        machine = RotationStateMachine()
        for state in (
            RotationState.VALIDATING,
            RotationState.REENCRYPTING,
            RotationState.FINALIZING,
            RotationState.COMPLETED,
        ):
            machine.advance(state)
        assert machine.state is RotationState.COMPLETED
        assert len(machine.history) == 5

    def test_illegal_transition(self):
        machine = RotationStateMachine()
        with pytest.raises(RotationError):
            machine.advance(RotationState.COMPLETED)

    def test_terminal_states(self):
        machine = RotationStateMachine()
        machine.advance(RotationState.VALIDATING)
        machine.fail()
        assert machine.state is RotationState.FAILED
        machine.fail()
        with pytest.raises(RotationError):
            machine.advance(RotationState.REENCRYPTING)

    def test_invalid_tuning(self, registry, ledger, ring, audit):
        with pytest.raises(ValidationError):
            RotationOrchestrator(registry, ledger, ring, audit, page_size=0)


# --- Test Full Rotation ---

class TestRotatePHIKey:
    """Every registered column ends up under the new key."""

    async def test_rotation(self, orchestrator, seeded, ledger, ring, key_a1, key_b2):
        ssn_repo, notes_repo = seeded
        summary = await orchestrator.rotate_phi_key(
            KEY_B2, "scheduled", rotated_by="security-team",
        )
        assert summary.state is RotationState.COMPLETED
        assert summary.records_affected == 1250
        assert summary.records_failed == 0
        assert summary.old_fingerprint == fingerprint(key_a1)
        assert summary.new_fingerprint == fingerprint(key_b2)
        assert [state for state, _ in summary.history] == [
            RotationState.PENDING,
            RotationState.VALIDATING,
            RotationState.REENCRYPTING,
            RotationState.FINALIZING,
            RotationState.COMPLETED,
        ]

        assert_all_under(ssn_repo, key_b2, old_key=key_a1)
        assert_all_under(notes_repo, key_b2, old_key=key_a1)
        assert decrypt_field(ssn_repo.rows[42], key_b2) == "ssn-42"
        assert ssn_repo.rows[1001] is None

        record = await ledger.last_completed(PHI)
        assert record.id == summary.record_id
        assert record.status is RotationStatus.COMPLETED
        assert record.records_affected == 1250
        assert record.rotated_by == "security-team"
        assert record.new_fingerprint == fingerprint(key_b2)
        assert await ledger.load_checkpoints(PHI, fingerprint(key_b2)) == {}

        assert ring.current.active == key_b2
        assert ring.current.retired == key_a1

    async def test_summary_to_dict(self, orchestrator, seeded):
        summary = await orchestrator.rotate_phi_key(KEY_B2)
        data = summary.to_dict()
        assert data["key_type"] == "PHI_ENCRYPTION_KEY"
        assert data["state"] == "COMPLETED"
        tables = {(t["table"], t["column"]): t for t in data["tables"]}
        assert tables[SSN]["reencrypted"] == 1000
        assert tables[NOTES]["reencrypted"] == 250
        assert KEY_A1 not in str(data) and KEY_B2 not in str(data)

    async def test_rerun_is_idempotent(self, orchestrator, seeded, ledger):
        ssn_repo, _ = seeded
        await orchestrator.rotate_phi_key(KEY_B2)
        writes = ssn_repo.writes
        again = await orchestrator.rotate_phi_key(KEY_B2)
        assert again.records_affected == 0
        assert again.records_skipped == 1250
        assert ssn_repo.writes == writes
        history = await ledger.history(PHI)
        assert [r.status for r in history] == [RotationStatus.COMPLETED] * 2

    async def test_same_key_after_grace(self, orchestrator, seeded, ring):
        await orchestrator.rotate_phi_key(KEY_B2)
        ring.end_grace()
        with pytest.raises(ValidationError):
            await orchestrator.rotate_phi_key(KEY_B2)

    async def test_empty_registry_columns(self, orchestrator):
        summary = await orchestrator.rotate_phi_key(KEY_B2)
        assert summary.records_affected == 0
        assert summary.state is RotationState.COMPLETED


# --- Test Validation ---

class TestValidation:
    """Rejected requests leave no trace in the ledger."""

    @pytest.mark.parametrize("new_key", ["", "abc", "zz" * 32, KEY_A1])
    async def test_rejected_keys(self, orchestrator, seeded, ledger, ring, key_a1, new_key):
        with pytest.raises(ValidationError):
            await orchestrator.rotate_phi_key(new_key)
        assert await ledger.history() == []
        assert ring.current.active == key_a1

    async def test_invalid_reason(self, orchestrator, ledger):
        with pytest.raises(ValidationError):
            await orchestrator.rotate_phi_key(KEY_B2, "yearly")
        assert await ledger.history() == []


# --- Test Dry Run ---

class TestDryRun:
    """Dry runs count rows and change nothing."""

    async def test_dry_run(self, orchestrator, seeded, ledger, ring, audit, audit_store, key_a1):
        ssn_repo, notes_repo = seeded
        summary = await orchestrator.rotate_phi_key(KEY_B2, dry_run=True)
        assert summary.dry_run
        assert summary.records_affected == 1250
        assert summary.record_id is None
        assert ssn_repo.writes == 0 and notes_repo.writes == 0
        assert await ledger.history() == []
        assert ring.current.active == key_a1
        assert_all_under(ssn_repo, key_a1)

        await audit.flush()
        actions = [e.action for e in audit_store.events]
        assert actions == [AuditAction.KEY_ROTATION_DRY_RUN]
        assert audit_store.events[0].metadata["rows_to_migrate"] == 1250

    async def test_dry_run_reports_undecryptable(self, orchestrator, seeded, key_c3):
        ssn_repo, _ = seeded
        ssn_repo.rows[7] = encrypt_field("foreign", key_c3)
        summary = await orchestrator.rotate_phi_key(KEY_B2, dry_run=True)
        assert summary.records_failed == 1
        assert summary.records_affected == 1249


# --- Test Single Flight ---

class TestSingleFlight:
    """Only one PHI rotation at a time."""

    async def test_concurrent_rotations(self, orchestrator, seeded):
        results = await asyncio.gather(
            orchestrator.rotate_phi_key(KEY_B2),
            orchestrator.rotate_phi_key(KEY_B2),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, RotationInProgressError)]
        summaries = [r for r in results if not isinstance(r, BaseException)]
        assert len(errors) == 1
        assert len(summaries) == 1
        assert summaries[0].records_affected == 1250

    async def test_lock_held(self, orchestrator, seeded, ledger, ring, key_a1):
        await ledger.begin(PHI, "manual", fingerprint(key_a1))
        with pytest.raises(RotationInProgressError):
            await orchestrator.rotate_phi_key(KEY_B2)
        assert ring.current.active == key_a1


# --- Test Failures and Resume ---

class TestPartialFailure:
    """Undecryptable rows fail the run; a re-run resumes from the checkpoint."""

    async def test_undecryptable_row(
        self, orchestrator, ssn_repo, ledger, audit, audit_store, key_a1, key_b2, key_c3
    ):
        seed_column(ssn_repo, 300, key_a1)
        ssn_repo.rows[150] = encrypt_field("foreign", key_c3)

        with pytest.raises(PartialRotationFailure) as exc:
            await orchestrator.rotate_phi_key(KEY_B2)
        failure = exc.value
        assert failure.failures == {"patients.patient_ssn_encrypted": [150]}
        assert failure.records_affected == 299
        assert KEY_C3 not in str(failure)

        record = await ledger.get(failure.record_id)
        assert record.status is RotationStatus.FAILED
        assert record.records_affected == 299

        checkpoints = await ledger.load_checkpoints(PHI, fingerprint(key_b2))
        assert checkpoints[SSN].last_pk == 100

        await audit.flush()
        failures = [
            e for e in audit_store.events if e.action is AuditAction.DECRYPTION_FAILURE
        ]
        assert len(failures) == 1
        assert failures[0].resource_id == "150"
        assert failures[0].metadata["column"] == "patient_ssn_encrypted"
        assert any(e.action is AuditAction.KEY_ROTATION_FAILED for e in audit_store.events)

        # operator restores the row, then re-runs with the same key
        ssn_repo.rows[150] = encrypt_field("restored", key_a1)
        summary = await orchestrator.rotate_phi_key(KEY_B2)
        assert summary.state is RotationState.COMPLETED
        assert summary.records_affected == 1
        progress = {(t.table, t.column): t for t in summary.tables}
        assert progress[SSN].resumed_from == 100
        assert_all_under(ssn_repo, key_b2, old_key=key_a1)
        assert decrypt_field(ssn_repo.rows[150], key_b2) == "restored"

    async def test_cancelled(self, orchestrator, seeded, ledger, key_b2):
        ssn_repo, _ = seeded
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(RotationCancelled) as exc:
            await orchestrator.rotate_phi_key(KEY_B2, cancel=cancel)
        assert isinstance(exc.value, PartialRotationFailure)
        record = await ledger.get(exc.value.record_id)
        assert record.status is RotationStatus.FAILED
        assert record.error == "cancelled"
        assert ssn_repo.writes == 0

        summary = await orchestrator.rotate_phi_key(KEY_B2)
        assert summary.records_affected == 1250
        assert_all_under(ssn_repo, key_b2)

    async def test_repository_error_aborts(self, orchestrator, seeded, ledger):
        ssn_repo, _ = seeded

        async def broken(after_pk, limit):
            raise ConnectionError("database went away")

        ssn_repo.fetch_page = broken
        with pytest.raises(PartialRotationFailure) as exc:
            await orchestrator.rotate_phi_key(KEY_B2)
        assert isinstance(exc.value.__cause__, ConnectionError)
        record = await ledger.get(exc.value.record_id)
        assert record.status is RotationStatus.FAILED
        assert await ledger.in_progress(PHI) is None

    async def test_error_on_later_page_counts_writes(
        self, orchestrator, ssn_repo, ledger, key_a1, key_b2
    ):
        seed_column(ssn_repo, 300, key_a1)
        original = ssn_repo.fetch_page
        calls = 0

        async def flaky(after_pk, limit):
            nonlocal calls
            calls += 1
            if calls == 3:
                raise ConnectionError("database went away")
            return await original(after_pk, limit)

        ssn_repo.fetch_page = flaky
        with pytest.raises(PartialRotationFailure) as exc:
            await orchestrator.rotate_phi_key(KEY_B2)
        assert ssn_repo.writes == 200
        assert exc.value.records_affected == 200
        record = await ledger.get(exc.value.record_id)
        assert record.status is RotationStatus.FAILED
        assert record.records_affected == 200

        ssn_repo.fetch_page = original
        summary = await orchestrator.rotate_phi_key(KEY_B2)
        progress = {(t.table, t.column): t for t in summary.tables}
        assert progress[SSN].resumed_from == 200
        assert summary.records_affected == 100
        assert_all_under(ssn_repo, key_b2)


# --- Test Row Handling ---

class TestRowHandling:
    """Legacy envelopes and concurrent application writes."""

    async def test_legacy_envelopes_upgraded(self, orchestrator, ssn_repo, key_a1, key_b2):
        for pk in range(1, 11):
            ssn_repo.rows[pk] = legacy_v1(f"legacy-{pk}", key_a1)
        # v1 under the new key still needs an upgrade
        ssn_repo.rows[11] = legacy_v1("legacy-11", key_b2)
        summary = await orchestrator.rotate_phi_key(KEY_B2)
        assert summary.records_affected == 11
        for pk, stored in ssn_repo.rows.items():
            assert stored.startswith("v2:")
            assert decrypt_field(stored, key_b2) == f"legacy-{pk}"

    async def test_concurrent_write_wins(self, orchestrator, ssn_repo, key_a1, key_b2):
        seed_column(ssn_repo, 20, key_a1)
        original = ssn_repo.compare_and_set

        async def racing(pk, expected, new):
            if pk == 5:
                # application updates the row under the promoted key first
                ssn_repo.rows[5] = encrypt_field("updated by app", key_b2)
            return await original(pk, expected, new)

        ssn_repo.compare_and_set = racing
        summary = await orchestrator.rotate_phi_key(KEY_B2)
        progress = {(t.table, t.column): t for t in summary.tables}
        assert progress[SSN].conflicts == 1
        assert summary.records_affected == 19
        assert decrypt_field(ssn_repo.rows[5], key_b2) == "updated by app"

    async def test_rows_readable_during_rotation(self, orchestrator, seeded, ring, key_a1):
        ssn_repo, _ = seeded
        await orchestrator.rotate_phi_key(KEY_B2)
        # a row written before promotion still opens with the retired key
        old_row = encrypt_field("late reader", key_a1)
        assert decrypt_field(old_row, ring.current) == "late reader"


# --- Test Audit Trail ---

class TestRotationAudit:
    """Lifecycle events share one correlation ID and never carry secrets."""

    async def test_events(self, orchestrator, seeded, audit, audit_store, key_b2):
        summary = await orchestrator.rotate_phi_key(KEY_B2, rotated_by="ops")
        await audit.flush()
        events = await audit_store.query()
        actions = [e.action for e in events]
        assert actions == [
            AuditAction.KEY_ROTATION_STARTED,
            AuditAction.KEY_ROTATION_COMPLETED,
        ]
        assert {e.correlation_id for e in events} == {summary.correlation_id}
        assert all(e.actor_id == "ops" for e in events)
        completed = events[-1]
        assert completed.metadata["records_affected"] == 1250
        assert completed.metadata["new_fingerprint"] == fingerprint(key_b2)
        for event in events:
            text = str(event.to_dict())
            assert KEY_A1 not in text and KEY_B2 not in text
            assert "ssn-1" not in text
        assert verify_chain(events) == (True, None)


# --- Test Grace Window ---

class TestEndGrace:
    """Dropping the retired key once every row is migrated."""

    async def test_end_grace(self, orchestrator, seeded, ring, audit, audit_store, key_a1, key_b2):
        await orchestrator.rotate_phi_key(KEY_B2)
        result = await orchestrator.end_grace(rotated_by="ops")
        assert ring.current.retired is None
        assert ring.current.active == key_b2
        assert result["retired_fingerprint"] == fingerprint(key_a1)
        assert result["rows_checked"] == 1250
        assert _cipher.cache_info().currsize == 0

        await audit.flush()
        events = await audit_store.query(action=AuditAction.KEY_GRACE_ENDED)
        assert len(events) == 1
        assert events[0].actor_id == "ops"
        assert events[0].metadata["active_fingerprint"] == fingerprint(key_b2)

    async def test_rows_still_on_retired_key(self, orchestrator, seeded, ring, key_a1, key_b2):
        ring.promote(key_b2)
        with pytest.raises(ValidationError):
            await orchestrator.end_grace()
        assert ring.current.retired == key_a1

    async def test_legacy_rows_block(self, orchestrator, ssn_repo, ring, key_b2):
        ring.promote(key_b2)
        ssn_repo.rows[1] = legacy_v1("legacy", key_b2)
        with pytest.raises(ValidationError):
            await orchestrator.end_grace()

    async def test_no_retired_key(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.end_grace()

    async def test_rotation_running(self, orchestrator, ledger, ring, key_a1, key_b2):
        ring.promote(key_b2)
        await ledger.begin(PHI, "manual", fingerprint(key_a1))
        with pytest.raises(RotationInProgressError):
            await orchestrator.end_grace()
        assert ring.current.retired == key_a1


# --- Test Search Columns ---

class TestSearchColumns:
    """Search hashes follow their envelopes to the new key."""

    @pytest.fixture
    def email_repo(self, repositories):
        return repositories.get("patients", "patient_email_encrypted")

    @pytest.fixture
    def searchable(self, repositories, ledger, ring, audit):
        registry = FieldRegistry(
            [
                FieldRegistryEntry(
                    "patients", "contact_email", "patient_email_encrypted",
                    search_column="patient_email_hash",
                ),
            ],
            repositories,
        )
        return RotationOrchestrator(registry, ledger, ring, audit, page_size=10)

    async def test_rehashed(self, searchable, email_repo, key_a1, key_b2):
        for pk in range(1, 26):
            email = f"Patient{pk}@Example.com"
            email_repo.rows[pk] = encrypt_field(email, key_a1)
            email_repo.search[pk] = search_hash(email, key_a1)
        summary = await searchable.rotate_phi_key(KEY_B2)
        assert summary.records_affected == 25
        for pk in range(1, 26):
            assert email_repo.search[pk] == search_hash(f"patient{pk}@example.com", key_b2)
            assert email_repo.search[pk] != search_hash(f"patient{pk}@example.com", key_a1)

    async def test_dry_run_leaves_hashes(self, searchable, email_repo, key_a1):
        email_repo.rows[1] = encrypt_field("a@example.com", key_a1)
        email_repo.search[1] = search_hash("a@example.com", key_a1)
        await searchable.rotate_phi_key(KEY_B2, dry_run=True)
        assert email_repo.search[1] == search_hash("a@example.com", key_a1)
