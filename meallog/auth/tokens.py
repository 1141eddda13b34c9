"""
Signed tokens for sessions and one-time sign-in links.
"""

from __future__ import annotations

import hashlib
import time
import uuid
from typing import Any, Callable, Dict, Optional

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from meallog.auth.identity import (
  EXPIRED_ACTION_CODE,
  INVALID_ACTION_CODE,
  AuthProviderError,
  Identity,
)

JWT_ALGORITHM = "HS256"
SESSION_TOKEN = "session"
EMAIL_LINK_TOKEN = "email_link"


class InvalidSession(RuntimeError):
  """Raised when a session token is missing, expired, revoked or malformed."""


def uid_for_email(email: str) -> str:
  """Stable user id derived from the (normalised) email address."""
  return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()[:28]


class SessionTokens:
  """Issue, verify and revoke JWTs.

  Revocations are held in process memory, so they last as long as the
  process; a restarted instance accepts a revoked token until it expires.
  An entry is dropped once its token has expired, since expiry alone then
  rejects it.
  """

  def __init__(
    self,
    secret: str,
    *,
    session_ttl_seconds: int,
    link_ttl_seconds: int,
    clock: Callable[[], float] = time.time,
  ) -> None:
    self._secret = secret
    self.session_ttl_seconds = session_ttl_seconds
    self.link_ttl_seconds = link_ttl_seconds
    self._clock = clock
    # jti -> exp
    self._revoked: Dict[str, int] = {}

  def _encode(self, payload: Dict[str, Any], ttl_seconds: int) -> str:
    now = int(self._clock())
    claims = dict(payload, iat=now, exp=now + ttl_seconds, jti=uuid.uuid4().hex)
    token = jwt.encode(claims, self._secret, algorithm=JWT_ALGORITHM)
    if isinstance(token, bytes):
      token = token.decode("utf-8")
    return token

  def _decode(self, token: str) -> Dict[str, Any]:
    # Expiry is checked against the injected clock below, not wall time.
    claims = jwt.decode(
      token,
      self._secret,
      algorithms=[JWT_ALGORITHM],
      options={"verify_exp": False},
    )
    if int(claims.get("exp", 0)) <= int(self._clock()):
      raise ExpiredSignatureError("Signature has expired")
    return claims

  def issue_session(self, identity: Identity) -> str:
    return self._encode(
      {
        "typ": SESSION_TOKEN,
        "sub": identity.uid,
        "email": identity.email,
        "name": identity.display_name,
      },
      self.session_ttl_seconds,
    )

  def verify_session(self, token: Optional[str]) -> Identity:
    if not token:
      raise InvalidSession("Authorization header missing or invalid.")
    try:
      claims = self._decode(token)
    except ExpiredSignatureError as exc:
      raise InvalidSession("Token has expired.") from exc
    except InvalidTokenError as exc:
      raise InvalidSession("Token is invalid.") from exc
    if claims.get("typ") != SESSION_TOKEN or not claims.get("sub"):
      raise InvalidSession("Token payload is malformed.")
    if claims.get("jti") in self._revoked:
      raise InvalidSession("Session has been signed out.")
    return Identity(uid=claims["sub"], email=claims.get("email"), display_name=claims.get("name"))

  def revoke(self, token: str) -> None:
    try:
      claims = jwt.decode(
        token,
        self._secret,
        algorithms=[JWT_ALGORITHM],
        options={"verify_exp": False},
      )
    except InvalidTokenError:
      return
    jti = claims.get("jti")
    if jti:
      self._revoked[jti] = int(claims.get("exp", 0))
    self._prune()

  def _prune(self) -> None:
    now = int(self._clock())
    for jti in [jti for jti, exp in self._revoked.items() if exp <= now]:
      del self._revoked[jti]

  @property
  def revoked_count(self) -> int:
    return len(self._revoked)

  def is_revoked(self, token: str) -> bool:
    try:
      claims = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM], options={"verify_exp": False})
    except InvalidTokenError:
      return False
    return claims.get("jti") in self._revoked

  def issue_link_code(self, email: str) -> str:
    return self._encode({"typ": EMAIL_LINK_TOKEN, "email": email}, self.link_ttl_seconds)

  def verify_link_code(self, code: str) -> str:
    """Return the email the link was issued for."""
    try:
      claims = self._decode(code)
    except ExpiredSignatureError as exc:
      raise AuthProviderError(EXPIRED_ACTION_CODE, "Sign-in link has expired.") from exc
    except InvalidTokenError as exc:
      raise AuthProviderError(INVALID_ACTION_CODE, "Sign-in link is invalid.") from exc
    if claims.get("typ") != EMAIL_LINK_TOKEN or not claims.get("email"):
      raise AuthProviderError(INVALID_ACTION_CODE, "Sign-in link is invalid.")
    if claims.get("jti") in self._revoked:
      raise AuthProviderError(INVALID_ACTION_CODE, "Sign-in link was already used.")
    return str(claims["email"])

  def consume_link_code(self, code: str) -> str:
    """Verify a link code and make sure it cannot be used again."""
    email = self.verify_link_code(code)
    self.revoke(code)
    return email


__all__ = ["SessionTokens", "InvalidSession", "uid_for_email", "JWT_ALGORITHM"]
