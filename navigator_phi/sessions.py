"""
Sessions — signed session tokens and bulk invalidation.

A session is a dict-like :class:`SessionData` persisted by a
:class:`SessionStore`. Clients hold a token ``<session_id>.<signature>``
where the signature is HMAC-SHA256 of the session id under the
session-signing secret. Rotating that secret invalidates every active
session and makes every previously issued token unverifiable.

Security Note:
    Never log tokens or the signing secret. Only log session counts and
    secret fingerprints.
"""
import hmac
import uuid
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Union, Optional, Any
from datetime import datetime, timezone
from collections.abc import Iterator, Mapping, MutableMapping

import jsonpickle
from jsonpickle.unpickler import loadclass
from pydantic import BaseModel as PydanticBaseModel

from .exceptions import InvalidSessionError, ValidationError
from .vault.config import fingerprint, parse_hex_key

logger = logging.getLogger("navigator.sessions")

SESSION_ID = "session_id"
SESSION_KEY = "identity"


class PydanticHandler(jsonpickle.handlers.BaseHandler):
    """PydanticHandler.
    Lets pydantic models stored in a session survive persistence.
    """
    def flatten(self, obj, data):
        data['__dict__'] = self.context.flatten(obj.__dict__, reset=False)
        return data

    def restore(self, obj):
        module_and_type = obj['py/object']
        mdl = loadclass(module_and_type)
        cls = mdl.__new__(mdl) if hasattr(mdl, '__new__') else object.__new__(mdl)
        cls.__dict__ = self.context.restore(obj['__dict__'], reset=False)
        return cls


jsonpickle.handlers.registry.register(PydanticBaseModel, PydanticHandler, base=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionData(MutableMapping[str, Any]):
    """Session dict-like object.

    Serializable values live in ``_data`` and are persisted; anything else
    (class instances, clients) lives in ``_objects`` and stays in memory.
    """

    _data: Union[str, Any] = {}
    _objects: dict[str, Any] = {}

    _internal_attrs = frozenset({
        '_data', '_objects', '_changed', '_id_', '_identity', '_new',
        '_max_age', '_created', '_valid', '_invalidated_at', 'args'
    })

    def __init__(
        self,
        *args,
        data: Optional[Mapping[str, Any]] = None,
        new: bool = False,
        id: Optional[str] = None,
        identity: Optional[Any] = None,
        max_age: Optional[int] = None,
        created: Optional[datetime] = None,
        valid: bool = True,
        invalidated_at: Optional[datetime] = None,
    ) -> None:
        object.__setattr__(self, '_data', {})
        object.__setattr__(self, '_objects', {})
        object.__setattr__(self, '_changed', True if new else False)
        self._id_ = id or uuid.uuid4().hex
        self._identity = identity or self._id_
        self._new = new
        self._max_age = max_age or None
        self._created = created or _utcnow()
        self._valid = valid
        self._invalidated_at = invalidated_at
        if data is not None:
            self._data.update(data)
        self.args = args

    def __repr__(self) -> str:
        # payload keys only, values may be PHI
        return (
            f'<PHI-Session [new:{self.new}, valid:{self.valid}] '
            f'keys={list(self._data.keys())}, objects={list(self._objects.keys())}>'
        )

    # --- Serialization helpers ---

    def _is_serializable(self, value: Any) -> bool:
        """True for values jsonpickle restores reliably in another process."""
        if value is None or isinstance(value, (bool, int, float, str, bytes)):
            return True
        if isinstance(value, dict):
            return all(self._is_serializable(v) for v in value.values())
        if isinstance(value, (list, tuple, set, frozenset)):
            return all(self._is_serializable(v) for v in value)
        if isinstance(value, (PydanticBaseModel, datetime)):
            return True
        return False

    def _get_value(self, key: str) -> Any:
        if key in self._objects:
            return self._objects[key]
        if key in self._data:
            return self._data[key]
        raise KeyError(key)

    def _set_value(self, key: str, value: Any) -> None:
        if self._is_serializable(value):
            self._objects.pop(key, None)
            self._data[key] = value
            self._changed = True
        else:
            self._data.pop(key, None)
            self._objects[key] = value

    def _del_value(self, key: str) -> None:
        deleted = False
        if key in self._objects:
            del self._objects[key]
            deleted = True
        if key in self._data:
            del self._data[key]
            self._changed = True
            deleted = True
        if not deleted:
            raise KeyError(key)

    # --- Properties ---

    @property
    def new(self) -> bool:
        return self._new

    @property
    def session_id(self) -> str:
        return self._id_

    @property
    def identity(self) -> Optional[Any]:  # type: ignore[misc]
        return self._identity

    @property
    def created(self) -> datetime:
        return self._created

    @property
    def max_age(self) -> Optional[int]:
        return self._max_age

    @max_age.setter
    def max_age(self, value: Optional[int]) -> None:
        self._max_age = value

    @property
    def valid(self) -> bool:
        return self._valid

    @property
    def invalidated_at(self) -> Optional[datetime]:
        return self._invalidated_at

    @property
    def empty(self) -> bool:
        return not bool(self._data) and not bool(self._objects)

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def expired(self, now: Optional[datetime] = None) -> bool:
        if self._max_age is None:
            return False
        age = ((now or _utcnow()) - self._created).total_seconds()
        return age > self._max_age

    def session_data(self) -> dict:
        """Return only serializable data (for persistence)."""
        return self._data

    def session_objects(self) -> dict:
        return self._objects

    def invalidate(self, when: Optional[datetime] = None) -> None:
        """Mark the session invalid and drop its payload."""
        self._changed = True
        self._valid = False
        self._invalidated_at = when or _utcnow()
        self._data = {}
        self._objects = {}

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data) + len(self._objects)

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for key in self._data:
            seen.add(key)
            yield key
        for key in self._objects:
            if key not in seen:
                yield key

    def __contains__(self, key: object) -> bool:
        return str(key) in self._objects or str(key) in self._data

    def __getitem__(self, key: str) -> Any:
        return self._get_value(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self._set_value(key, value)

    def __delitem__(self, key: str) -> None:
        self._del_value(key)

    def __getattr__(self, key: str) -> Any:
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self._get_value(key)
        except KeyError:
            raise AttributeError(key) from None

    def __setattr__(self, key: str, value: Any) -> None:
        if (
            key in self._internal_attrs
            or key.startswith('_')
            or isinstance(getattr(type(self), key, None), property)
        ):
            object.__setattr__(self, key, value)
        else:
            self._set_value(key, value)

    # --- Persistence ---

    def encode(self) -> str:
        """Encode the persistable payload with jsonpickle.

        Raises:
            RuntimeError: Error converting data to json.
        """
        try:
            return jsonpickle.encode(self._data)
        except Exception as err:
            raise RuntimeError(err) from err

    @classmethod
    def decode(cls, payload: Optional[str], **kwargs) -> "SessionData":
        """Rebuild a session from an encoded payload plus its row attributes.

        Raises:
            RuntimeError: Error converting data from json.
        """
        try:
            data = jsonpickle.decode(payload) if payload else {}
        except Exception as err:
            raise RuntimeError(err) from err
        return cls(data=data, **kwargs)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

class SessionSigner:
    """HMAC-SHA256 signer of session ids."""

    def __init__(self, secret: Union[str, bytes]):
        self._secret = parse_hex_key(secret, "SESSION_SECRET")

    def __repr__(self) -> str:
        return f"<SessionSigner {self.fingerprint}>"

    @property
    def fingerprint(self) -> str:
        return fingerprint(self._secret)

    def matches(self, secret: bytes) -> bool:
        return hmac.compare_digest(self._secret, secret)

    def sign(self, session_id: str) -> str:
        mac = hmac.new(self._secret, session_id.encode("utf-8"), hashlib.sha256)
        return f"{session_id}.{mac.hexdigest()}"

    def unsign(self, token: str) -> str:
        """Return the session id of a token signed with this secret.

        Raises:
            InvalidSessionError: If the token is malformed or forged.
        """
        if not token or "." not in token:
            raise InvalidSessionError("malformed session token")
        session_id, _, signature = token.rpartition(".")
        expected = self.sign(session_id).rpartition(".")[2]
        if not hmac.compare_digest(expected, signature):
            raise InvalidSessionError("invalid session signature")
        return session_id


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SessionStore(ABC):
    """Persistence of sessions."""

    @abstractmethod
    async def create(self, session: SessionData) -> SessionData:
        ...

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionData]:
        ...

    @abstractmethod
    async def count_valid(self) -> int:
        ...

    @abstractmethod
    async def invalidate_all(self) -> int:
        """Invalidate every valid session in one atomic step.

        Returns:
            Number of sessions invalidated.
        """


class SessionAuthenticator:
    """Issues and verifies session tokens against the store."""

    def __init__(self, store: SessionStore, secret: Union[str, bytes]):
        self._store = store
        self._signer = SessionSigner(secret)

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def fingerprint(self) -> str:
        return self._signer.fingerprint

    def is_current_secret(self, secret: Union[str, bytes]) -> bool:
        return self._signer.matches(parse_hex_key(secret, "SESSION_SECRET"))

    async def login(
        self,
        identity: Any,
        data: Optional[Mapping[str, Any]] = None,
        max_age: Optional[int] = None,
    ) -> tuple[SessionData, str]:
        """Create a session for ``identity`` and return it with its token."""
        if identity is None:
            raise ValidationError("Session identity is required")
        session = SessionData(data=data, identity=identity, new=True, max_age=max_age)
        session = await self._store.create(session)
        logger.debug("Session created for identity=%s", identity)
        return session, self._signer.sign(session.session_id)

    async def authenticate(self, token: str) -> SessionData:
        """Resolve a token to its valid session.

        Raises:
            InvalidSessionError: If the token is forged, signed with a
                rotated secret, or the session is invalid or expired.
        """
        session_id = self._signer.unsign(token)
        session = await self._store.get(session_id)
        if session is None or not session.valid:
            raise InvalidSessionError("session is no longer valid")
        if session.expired():
            raise InvalidSessionError("session has expired")
        return session

    def rotate_secret(self, new_secret: Union[str, bytes]) -> str:
        """Swap the signing secret; returns the new fingerprint."""
        old = self._signer.fingerprint
        self._signer = SessionSigner(new_secret)
        logger.info(
            "Session signing secret swapped: old=%s new=%s",
            old, self._signer.fingerprint,
        )
        return self._signer.fingerprint
