"""
Request authentication from the session cookie.

A protected handler runs only after the guard has read the `token` cookie,
verified it, and checked that its token id has not been revoked at logout.
A missing cookie is 401; any other rejection is 403. On success the
request carries an Identity under request['identity'].

The guard does not look the account up. Deleting an account revokes only
the token used for the delete, so other live tokens of that account keep
passing here until they expire. Handlers that depend on the account
existing (refetch, post and comment creation) check it themselves.
"""

import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import web

from blogcore.db import Collection
from blogcore.errors import Forbidden, TokenError, Unauthorized
from blogcore.settings import COOKIE_NAME
from blogcore.tokens import TokenService

logger = logging.getLogger(__name__)

IDENTITY = 'identity'


@dataclass(frozen=True)
class Identity:
    account_id: str
    username: str
    email: str
    token_id: str
    expires_at: float

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Identity':
        return cls(
            account_id=payload['account_id'],
            username=payload.get('username', ''),
            email=payload.get('email', ''),
            token_id=payload['jti'],
            expires_at=payload['exp'],
        )


class SessionGuard:
    """Turns a session cookie into an Identity or a terminal 401/403"""

    def __init__(self, tokens: TokenService, revocations: Collection,
                 cookie_name: str = COOKIE_NAME):
        self.tokens = tokens
        self.revocations = revocations
        self.cookie_name = cookie_name

    async def authenticate(self, request: web.Request) -> Identity:
        token = request.cookies.get(self.cookie_name)
        if not token:
            raise Unauthorized("You are not authenticated")

        try:
            payload = self.tokens.decode(token)
        except TokenError as e:
            logger.warning(f"Rejected session token on {request.path}: {e.message}")
            raise Forbidden("Token is not valid") from e

        if not isinstance(payload.get('account_id'), str) or not isinstance(payload.get('jti'), str):
            logger.warning(f"Session token on {request.path} lacks identity claims")
            raise Forbidden("Token is not valid")

        if await self.revocations.get(payload['jti']) is not None:
            logger.warning(f"Revoked session token presented on {request.path}")
            raise Forbidden("Token is not valid")

        identity = Identity.from_payload(payload)
        logger.debug(f"Authenticated account {identity.account_id}")
        return identity

    async def revoke(self, token: Optional[str]) -> bool:
        """Deny a still-valid token for the rest of its lifetime"""
        if not token:
            return False
        try:
            payload = self.tokens.decode(token)
        except TokenError:
            return False
        jti = payload.get('jti')
        if not isinstance(jti, str):
            return False
        if await self.revocations.get(jti) is None:
            await self.revocations.insert({'_id': jti, 'expires_at': payload['exp']})
        return True

    async def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop revocations for tokens that would be rejected as expired anyway"""
        current = time.time() if now is None else now
        removed = await self.revocations.delete_many(lambda doc: doc.get('expires_at', 0) < current)
        return len(removed)


def login_required(handler):
    """Decorator for handlers that need an authenticated identity"""
    @functools.wraps(handler)
    async def wrapper(request: web.Request):
        guard: SessionGuard = request.app[SESSION_GUARD]
        request[IDENTITY] = await guard.authenticate(request)
        return await handler(request)
    return wrapper


def current_identity(request: web.Request) -> Identity:
    return request[IDENTITY]


def require_owner(identity: Identity, owner_id: Optional[str], what: str) -> None:
    """Only the owning account may modify a record"""
    if owner_id != identity.account_id:
        logger.warning(f"Account {identity.account_id} tried to modify {what} owned by {owner_id}")
        raise Forbidden(f"You can only modify your own {what}")


SESSION_GUARD = web.AppKey('session_guard', SessionGuard)
