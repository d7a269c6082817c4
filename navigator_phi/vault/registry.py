"""
Field Registry — which columns hold PHI envelopes and who owns them.

The registry is built once at process start from static configuration and
is never mutated afterwards. Rotation enumerates it to discover every
storage location that must be re-encrypted, so adding an encrypted field
only requires a new entry.
"""
import re
import logging
from typing import Callable, Iterable, Iterator, Mapping, Optional, Protocol, Any
from dataclasses import dataclass

from ..exceptions import ValidationError
from .ledger import KeyType

logger = logging.getLogger("navigator.vault")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class FieldRepository(Protocol):
    """Row-paging access to one encrypted column."""

    async def fetch_page(
        self, after_pk: Optional[Any], limit: int
    ) -> list[tuple[Any, Optional[str]]]:
        """Return up to ``limit`` (pk, stored value) pairs with pk > after_pk,
        ordered by pk, skipping NULL values."""
        ...

    async def compare_and_set(
        self, pk: Any, expected: str, new: str, search: Optional[str] = None
    ) -> bool:
        """Replace the value only if it still equals ``expected``.

        ``search`` is only passed for entries with a search column; it is
        written to that column in the same statement.
        """
        ...


def _check_identifier(value: str, what: str) -> str:
    if not _IDENTIFIER.match(value or ""):
        raise ValidationError(f"Invalid {what} identifier: {value!r}")
    return value


@dataclass(frozen=True)
class FieldRegistryEntry:
    """One encrypted column: {table, logical field} → encrypted column."""

    table: str
    field: str
    encrypted_column: str
    key_type: KeyType = KeyType.PHI_ENCRYPTION_KEY
    primary_key: str = "id"
    search_column: Optional[str] = None

    def __post_init__(self):
        _check_identifier(self.table, "table")
        _check_identifier(self.encrypted_column, "column")
        _check_identifier(self.primary_key, "primary key")
        if self.search_column is not None:
            _check_identifier(self.search_column, "search column")
        if not self.field:
            raise ValidationError("Registry entry field name cannot be empty")

    @property
    def location(self) -> str:
        return f"{self.table}.{self.encrypted_column}"


RepositoryFactory = Callable[[FieldRegistryEntry], FieldRepository]


class FieldRegistry:
    """Static mapping of encrypted fields to their repositories."""

    def __init__(
        self,
        entries: Iterable[FieldRegistryEntry],
        repository_factory: Optional[RepositoryFactory] = None,
    ):
        ordered: dict[tuple[str, str], FieldRegistryEntry] = {}
        for entry in entries:
            key = (entry.table, entry.encrypted_column)
            if key in ordered:
                raise ValidationError(f"Duplicate registry entry: {entry.location}")
            ordered[key] = entry
        self._entries = tuple(ordered.values())
        self._factory = repository_factory
        self._repositories: dict[tuple[str, str], FieldRepository] = {}

    def __iter__(self) -> Iterator[FieldRegistryEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<FieldRegistry {len(self._entries)} field(s)>"

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Mapping[str, str]],
        repository_factory: Optional[RepositoryFactory] = None,
        primary_key: str = "id",
        search_columns: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> "FieldRegistry":
        """Build from ``{table: {logical_field: encrypted_column}}``.

        ``search_columns`` maps ``{table: {logical_field: hash_column}}`` for
        fields that need equality lookups.
        """
        search_columns = search_columns or {}
        entries = [
            FieldRegistryEntry(
                table=table, field=name, encrypted_column=column,
                primary_key=primary_key,
                search_column=search_columns.get(table, {}).get(name),
            )
            for table, fields in mapping.items()
            for name, column in fields.items()
        ]
        return cls(entries, repository_factory)

    def entries_for(self, key_type: KeyType) -> list[FieldRegistryEntry]:
        return [e for e in self._entries if e.key_type == key_type]

    def tables(self) -> list[str]:
        return sorted({e.table for e in self._entries})

    def lookup(self, table: str, field: str) -> FieldRegistryEntry:
        for entry in self._entries:
            if entry.table == table and (
                entry.field == field or entry.encrypted_column == field
            ):
                return entry
        raise KeyError(f"{table}.{field} is not a registered encrypted field")

    def is_registered(self, table: str, field: str) -> bool:
        try:
            self.lookup(table, field)
        except KeyError:
            return False
        return True

    def repository_for(self, entry: FieldRegistryEntry) -> FieldRepository:
        key = (entry.table, entry.encrypted_column)
        repo = self._repositories.get(key)
        if repo is None:
            if self._factory is None:
                raise RuntimeError("FieldRegistry has no repository factory")
            repo = self._factory(entry)
            self._repositories[key] = repo
        return repo


DEFAULT_PHI_FIELDS: dict[str, dict[str, str]] = {
    "therapist_phi": {
        "ssn": "therapist_ssn_encrypted",
        "dob": "therapist_dob_encrypted",
        "gender": "therapist_gender_encrypted",
        "race": "therapist_race_encrypted",
        "home_address": "therapist_home_address_encrypted",
        "home_city": "therapist_home_city_encrypted",
        "home_state": "therapist_home_state_encrypted",
        "home_zip": "therapist_home_zip_encrypted",
        "personal_phone": "therapist_personal_phone_encrypted",
        "personal_email": "therapist_personal_email_encrypted",
        "birth_city": "therapist_birth_city_encrypted",
        "birth_state": "therapist_birth_state_encrypted",
        "birth_country": "therapist_birth_country_encrypted",
        "work_permit_visa": "therapist_work_permit_visa_encrypted",
        "emergency_contact_name": "therapist_emergency_contact_name_encrypted",
        "emergency_contact_phone": "therapist_emergency_contact_phone_encrypted",
        "emergency_contact_relationship": "therapist_emergency_contact_relationship_encrypted",
    },
    "patients": {
        "contact_email": "patient_contact_email_encrypted",
        "contact_phone": "patient_contact_phone_encrypted",
        "dob": "patient_dob_encrypted",
        "gender": "patient_gender_encrypted",
        "race": "patient_race_encrypted",
        "ssn": "patient_ssn_encrypted",
    },
    "clients_hipaa": {
        "email": "email_encrypted",
        "phone": "phone_encrypted",
        "address": "address_encrypted",
        "city": "city_encrypted",
        "state": "state_encrypted",
        "zip_code": "zip_code_encrypted",
        "date_of_birth": "date_of_birth_encrypted",
        "gender": "gender_encrypted",
        "race": "race_encrypted",
        "ethnicity": "ethnicity_encrypted",
        "pronouns": "pronouns_encrypted",
        "hometown": "hometown_encrypted",
        "notes": "notes_encrypted",
        "diagnosis_codes": "diagnosis_codes_encrypted",
        "treatment_history": "treatment_history_encrypted",
        "primary_diagnosis_code": "primary_diagnosis_code_encrypted",
        "secondary_diagnosis_code": "secondary_diagnosis_code_encrypted",
        "referring_physician": "referring_physician_encrypted",
        "referring_physician_npi": "referring_physician_npi_encrypted",
        "insurance_info": "insurance_info_encrypted",
        "authorization_info": "authorization_info_encrypted",
        "prior_auth_number": "prior_auth_number_encrypted",
        "member_id": "member_id_encrypted",
        "group_number": "group_number_encrypted",
        "primary_insured_name": "primary_insured_name_encrypted",
    },
    "clinical_sessions_hipaa": {
        "session_notes": "session_notes_encrypted",
        "session_assessment": "session_assessment_encrypted",
        "session_goals": "session_goals_encrypted",
    },
}


def default_registry(
    repository_factory: Optional[RepositoryFactory] = None,
) -> FieldRegistry:
    """Registry of the encrypted columns shipped with the clinical schema."""
    return FieldRegistry.from_mapping(DEFAULT_PHI_FIELDS, repository_factory)
