"""
The service's own identity provider, bound to a single session.

Sessions are only ever created through emailed sign-in links; popup and
redirect sign-in belong to hosted providers and are reported as unsupported.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from meallog.auth.identity import (
  INVALID_ACTION_CODE,
  INVALID_EMAIL,
  OPERATION_NOT_SUPPORTED,
  AuthProviderError,
  AuthStateHub,
  AuthStateStream,
  Identity,
  PersistenceMode,
)
from meallog.auth.tokens import InvalidSession, SessionTokens, uid_for_email

logger = logging.getLogger(__name__)

LINK_MODE = "signIn"


def _link_code(link: str) -> Optional[str]:
  query = parse_qs(urlsplit(link or "").query)
  if query.get("mode", [None])[0] != LINK_MODE:
    return None
  code = query.get("oobCode", [None])[0]
  return code or None


class TokenIdentityProvider:
  def __init__(
    self,
    tokens: SessionTokens,
    mailer,
    *,
    session_token: Optional[str] = None,
  ) -> None:
    self._tokens = tokens
    self._mailer = mailer
    self._session_token: Optional[str] = None
    self.persistence = PersistenceMode.LOCAL

    current: Optional[Identity] = None
    if session_token:
      try:
        current = tokens.verify_session(session_token)
        self._session_token = session_token
      except InvalidSession as exc:
        logger.info("Ignoring stored session: %s", exc)
    self._hub = AuthStateHub(current)

  @property
  def current_user(self) -> Optional[Identity]:
    return self._hub.current

  @property
  def session_token(self) -> Optional[str]:
    return self._session_token

  async def set_persistence(self, mode: PersistenceMode) -> None:
    self.persistence = PersistenceMode(mode)

  async def sign_in_with_popup(self) -> Identity:
    raise AuthProviderError(OPERATION_NOT_SUPPORTED, "Popup sign-in is not available; use an email link.")

  async def sign_in_with_redirect(self) -> None:
    raise AuthProviderError(OPERATION_NOT_SUPPORTED, "Redirect sign-in is not available; use an email link.")

  async def get_redirect_result(self) -> Optional[Identity]:
    return None

  def auth_state_changes(self) -> AuthStateStream:
    return self._hub.subscribe()

  async def sign_out(self) -> None:
    if self._session_token:
      self._tokens.revoke(self._session_token)
      self._session_token = None
    self._hub.emit(None)

  def build_sign_in_link(self, email: str, continue_url: str) -> str:
    code = self._tokens.issue_link_code(email)
    separator = "&" if urlsplit(continue_url).query else "?"
    return f"{continue_url}{separator}{urlencode({'mode': LINK_MODE, 'oobCode': code})}"

  async def send_sign_in_link_to_email(self, email: str, continue_url: str) -> None:
    link = self.build_sign_in_link(email, continue_url)
    self._mailer.send_sign_in_link(email, link)

  def is_sign_in_with_email_link(self, link: str) -> bool:
    return _link_code(link) is not None

  async def sign_in_with_email_link(self, email: str, link: str) -> Identity:
    code = _link_code(link)
    if code is None:
      raise AuthProviderError(INVALID_ACTION_CODE, "Not a sign-in link.")
    link_email = self._tokens.verify_link_code(code)
    if (email or "").strip().lower() != link_email.strip().lower():
      raise AuthProviderError(INVALID_EMAIL, "The email does not match the sign-in link.")
    self._tokens.consume_link_code(code)

    identity = Identity(uid=uid_for_email(link_email), email=link_email.strip().lower())
    self._session_token = self._tokens.issue_session(identity)
    self._hub.emit(identity)
    return identity


__all__ = ["TokenIdentityProvider", "LINK_MODE"]
