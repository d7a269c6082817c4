"""
Tests for SessionData, session tokens and the session authenticator.

Tests cover:
- Serializable data storage (_data) and in-memory objects (_objects)
- Magic methods and attribute-style access
- Invalidation, expiry and encode/decode
- Token signing and verification
- Login and authentication against the store
"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import BaseModel

from navigator_phi.exceptions import InvalidSessionError, ValidationError
from navigator_phi.sessions import SessionAuthenticator, SessionData, SessionSigner
from conftest import SESSION_SECRET_1, SESSION_SECRET_2


# --- Test Fixtures ---

class DummyClient:
    """Non-serializable class for testing in-memory storage."""
    def __init__(self, name: str = "default"):
        self.name = name
        self.calls = []


class UserModel(BaseModel):
    """Serializable pydantic model for testing."""
    username: str
    email: str
    age: int = 0


@pytest.fixture
def session():
    """Create a fresh SessionData instance."""
    return SessionData()


# --- Test Session Initialization ---

class TestSessionInitialization:
    """Tests for SessionData initialization."""

    def test_empty_session(self, session):
        assert session.empty is True
        assert len(session) == 0
        assert session.valid is True
        assert session.invalidated_at is None

    def test_initial_data(self):
        session = SessionData(data={"name": "test_session", "count": 42})
        assert session.empty is False
        assert session["name"] == "test_session"
        assert session["count"] == 42

    def test_ids(self):
        session = SessionData(id="my-session-id", identity="user123")
        assert session.session_id == "my-session-id"
        assert session.identity == "user123"
        assert SessionData().session_id != SessionData().session_id

    def test_identity_defaults_to_id(self, session):
        assert session.identity == session.session_id

    def test_created_timestamp(self, session):
        assert isinstance(session.created, datetime)
        assert session.created.tzinfo is not None


# --- Test Storage Routing ---

class TestStorageRouting:
    """Serializable values are persisted; objects stay in memory."""

    @pytest.mark.parametrize("value", [
        "text", 100, 19.99, True, None, [1, 2, "three"],
        {"key": "value", "nested": {"a": 1}},
    ])
    def test_serializable(self, session, value):
        session["item"] = value
        assert session["item"] == value
        assert "item" in session.session_data()
        assert "item" not in session.session_objects()

    def test_datetime_and_model(self, session):
        now = datetime.now(timezone.utc)
        session["at"] = now
        session["user"] = UserModel(username="john", email="john@example.com")
        assert "at" in session.session_data()
        assert "user" in session.session_data()

    def test_object(self, session):
        client = DummyClient("ehr")
        session["client"] = client
        assert session["client"] is client
        assert "client" in session.session_objects()
        assert "client" not in session.session_data()

    def test_list_of_objects(self, session):
        session["clients"] = [DummyClient(), DummyClient()]
        assert "clients" in session.session_objects()

    def test_reassign_moves_storage(self, session):
        session["key"] = "serializable"
        session["key"] = DummyClient()
        assert "key" not in session.session_data()
        session["key"] = "again"
        assert "key" not in session.session_objects()
        assert session["key"] == "again"


# --- Test Magic Methods ---

class TestMagicMethods:
    """Dict-like and attribute-style access."""

    def test_attribute_access(self, session):
        session.username = "alice"
        assert session.username == "alice"
        assert session["username"] == "alice"
        with pytest.raises(AttributeError):
            _ = session.nonexistent

    def test_missing_key(self, session):
        with pytest.raises(KeyError):
            _ = session["nonexistent"]
        with pytest.raises(KeyError):
            del session["nonexistent"]

    def test_delete(self, session):
        session["name"] = "test"
        session["client"] = DummyClient()
        del session["name"]
        del session["client"]
        assert session.empty

    def test_mapping_views(self, session):
        client = DummyClient()
        session["a"] = 1
        session["b"] = client
        assert len(session) == 2
        assert set(session) == {"a", "b"}
        assert dict(session.items()) == {"a": 1, "b": client}
        assert session.get("missing", "default") == "default"

    def test_changed_flag(self, session):
        assert session.is_changed is False
        session["client"] = DummyClient()
        assert session.is_changed is False
        session["name"] = "test"
        assert session.is_changed is True

    def test_repr_hides_values(self, session):
        session["ssn"] = "123-45-6789"
        text = repr(session)
        assert "PHI-Session" in text
        assert "ssn" in text
        assert "123-45-6789" not in text


# --- Test Lifecycle ---

class TestLifecycle:
    """Invalidation and expiry."""

    def test_invalidate(self, session):
        session["name"] = "test"
        session["client"] = DummyClient()
        session.is_changed = False
        session.invalidate()
        assert session.valid is False
        assert session.invalidated_at is not None
        assert session.empty
        assert session.is_changed is True

    def test_expiry(self):
        created = datetime.now(timezone.utc) - timedelta(minutes=10)
        assert SessionData(max_age=60, created=created).expired()
        assert not SessionData(max_age=3600, created=created).expired()
        assert not SessionData(created=created).expired()

    def test_max_age_setter(self, session):
        assert session.max_age is None
        session.max_age = 3600
        assert session.max_age == 3600


# --- Test Encode/Decode ---

class TestEncodeDecode:
    """Only the persistable payload is encoded."""

    def test_round_trip(self, session):
        session["items"] = [1, 2, 3]
        session["nested"] = {"a": "b"}
        session["client"] = DummyClient()
        restored = SessionData.decode(session.encode(), id=session.session_id)
        assert restored.session_id == session.session_id
        assert restored["items"] == [1, 2, 3]
        assert restored["nested"] == {"a": "b"}
        assert "client" not in restored

    def test_model_round_trip(self, session):
        session["user"] = UserModel(username="bob", email="bob@example.com", age=25)
        restored = SessionData.decode(session.encode())
        user = restored["user"]
        assert isinstance(user, UserModel)
        assert user.username == "bob"
        assert user.age == 25

    def test_decode_empty(self):
        assert SessionData.decode(None).empty

    def test_decode_garbage(self):
        with pytest.raises(RuntimeError):
            SessionData.decode("{not json")


# --- Test Tokens ---

class TestSessionSigner:
    """HMAC-signed session tokens."""

    def test_sign_unsign(self):
        signer = SessionSigner(SESSION_SECRET_1)
        token = signer.sign("abc123")
        assert token.startswith("abc123.")
        assert signer.unsign(token) == "abc123"

    @pytest.mark.parametrize("token", ["", "nodot", "abc123.deadbeef"])
    def test_invalid_tokens(self, token):
        with pytest.raises(InvalidSessionError):
            SessionSigner(SESSION_SECRET_1).unsign(token)

    def test_other_secret(self):
        token = SessionSigner(SESSION_SECRET_2).sign("abc123")
        with pytest.raises(InvalidSessionError):
            SessionSigner(SESSION_SECRET_1).unsign(token)

    def test_repr_hides_secret(self):
        assert SESSION_SECRET_1 not in repr(SessionSigner(SESSION_SECRET_1))

    def test_bad_secret(self):
        with pytest.raises(ValidationError):
            SessionSigner("short")


# --- Test Authenticator ---

class TestSessionAuthenticator:
    """Login and authentication against the session store."""

    async def test_login_authenticate(self, authenticator, session_store):
        session, token = await authenticator.login("user-1", {"role": "therapist"})
        assert session.session_id in session_store.sessions
        assert session.is_changed is False
        found = await authenticator.authenticate(token)
        assert found is session
        assert found["role"] == "therapist"

    async def test_identity_required(self, authenticator):
        with pytest.raises(ValidationError):
            await authenticator.login(None)

    async def test_forged_token(self, authenticator):
        _, token = await authenticator.login("user-1")
        forged = token[:-1] + ("0" if token[-1] != "0" else "1")
        with pytest.raises(InvalidSessionError):
            await authenticator.authenticate(forged)

    async def test_unknown_session(self, authenticator):
        token = SessionSigner(SESSION_SECRET_1).sign("never-created")
        with pytest.raises(InvalidSessionError):
            await authenticator.authenticate(token)

    async def test_invalidated_session(self, authenticator, session_store):
        _, token = await authenticator.login("user-1")
        assert await session_store.invalidate_all() == 1
        with pytest.raises(InvalidSessionError):
            await authenticator.authenticate(token)
        assert await session_store.count_valid() == 0

    async def test_expired_session(self, authenticator):
        session, token = await authenticator.login("user-1", max_age=60)
        session._created = session.created - timedelta(minutes=5)
        with pytest.raises(InvalidSessionError):
            await authenticator.authenticate(token)

    async def test_rotate_secret(self, session_store):
        authenticator = SessionAuthenticator(session_store, SESSION_SECRET_1)
        old = authenticator.fingerprint
        assert authenticator.is_current_secret(SESSION_SECRET_1)
        new = authenticator.rotate_secret(SESSION_SECRET_2)
        assert new != old
        assert authenticator.is_current_secret(SESSION_SECRET_2)
        assert not authenticator.is_current_secret(SESSION_SECRET_1)
