"""
aiohttp middlewares.

- ``correlation_middleware``: every request runs under one correlation ID,
  taken from the ``X-Correlation-ID`` header or freshly generated, and
  echoed back in the response.
- ``session_middleware``: resolves the bearer session token to a valid
  session stored on the request, or answers 401.
"""
import re
import logging
from typing import Iterable

from aiohttp import web

from .exceptions import InvalidSessionError
from .audit.context import correlation_scope
from .sessions import SessionAuthenticator

logger = logging.getLogger("navigator.sessions")

CORRELATION_HEADER = "X-Correlation-ID"
SESSION_COOKIE = "PHI_SESSION"
SESSION_REQUEST_KEY = "session"
_VALID_CID = re.compile(r"^[A-Za-z0-9\-_.]{8,64}$")


@web.middleware
async def correlation_middleware(request: web.Request, handler):
    incoming = request.headers.get(CORRELATION_HEADER)
    cid = incoming if incoming and _VALID_CID.match(incoming) else None
    with correlation_scope(cid) as current:
        request["correlation_id"] = current
        response = await handler(request)
        response.headers[CORRELATION_HEADER] = current
        return response


def _token(request: web.Request):
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.cookies.get(SESSION_COOKIE)


def session_middleware(
    authenticator: SessionAuthenticator, exempt: Iterable[str] = ()
):
    """Build a middleware that requires a valid session outside ``exempt`` paths."""
    exempt = tuple(exempt)

    @web.middleware
    async def middleware(request: web.Request, handler):
        if exempt and request.path.startswith(exempt):
            return await handler(request)
        token = _token(request)
        if not token:
            raise web.HTTPUnauthorized(reason="Session required")
        try:
            session = await authenticator.authenticate(token)
        except InvalidSessionError as err:
            logger.debug("Rejected session for %s: %s", request.path, err)
            raise web.HTTPUnauthorized(reason="Invalid session") from None
        request[SESSION_REQUEST_KEY] = session
        return await handler(request)

    return middleware
