"""
Types shared by everything that talks to the identity provider.

The provider owns identities and sessions; the rest of the auth package only
reads :class:`Identity` values and reacts to auth-state changes delivered as a
cancellable async stream.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)

POPUP_BLOCKED = "auth/popup-blocked"
POPUP_CLOSED_BY_USER = "auth/popup-closed-by-user"
CANCELLED_POPUP_REQUEST = "auth/cancelled-popup-request"
INVALID_ACTION_CODE = "auth/invalid-action-code"
INVALID_EMAIL = "auth/invalid-email"
EXPIRED_ACTION_CODE = "auth/expired-action-code"
OPERATION_NOT_SUPPORTED = "auth/operation-not-supported-in-this-environment"


class AuthProviderError(RuntimeError):
  """Raised by an identity provider; ``code`` follows the provider's naming."""

  def __init__(self, code: str, message: Optional[str] = None) -> None:
    super().__init__(message or code)
    self.code = code


class PersistenceMode(str, enum.Enum):
  LOCAL = "local"
  SESSION = "session"
  NONE = "none"


@dataclass(frozen=True)
class Identity:
  uid: str
  email: Optional[str] = None
  display_name: Optional[str] = None

  @property
  def short_name(self) -> str:
    if self.display_name:
      return self.display_name
    if self.email:
      return self.email.split("@")[0]
    return self.uid

  def to_dict(self) -> dict:
    return {"uid": self.uid, "email": self.email, "display_name": self.display_name}


class AuthStateStream:
  """Async iterator over auth-state transitions.

  ``None`` means signed out. The stream ends once :meth:`unsubscribe` is
  called; iteration then stops after any events already queued are drained.
  """

  _CLOSED = object()

  def __init__(self, hub: "AuthStateHub") -> None:
    self._hub = hub
    self._queue: "asyncio.Queue[object]" = asyncio.Queue()
    self._closed = False

  @property
  def closed(self) -> bool:
    return self._closed

  def _push(self, identity: Optional[Identity]) -> None:
    if not self._closed:
      self._queue.put_nowait(identity)

  def unsubscribe(self) -> None:
    if self._closed:
      return
    self._closed = True
    self._hub._detach(self)
    self._queue.put_nowait(self._CLOSED)

  def __aiter__(self) -> "AuthStateStream":
    return self

  async def __anext__(self) -> Optional[Identity]:
    item = await self._queue.get()
    if item is self._CLOSED:
      raise StopAsyncIteration
    return item  # type: ignore[return-value]

  async def __aenter__(self) -> "AuthStateStream":
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    self.unsubscribe()


class AuthStateHub:
  """Fan-out of auth-state events to every open stream.

  New subscribers receive the current state first, mirroring how providers
  report a restored session on subscription.
  """

  def __init__(self, current: Optional[Identity] = None) -> None:
    self._streams: List[AuthStateStream] = []
    self._current = current

  @property
  def current(self) -> Optional[Identity]:
    return self._current

  def subscribe(self) -> AuthStateStream:
    stream = AuthStateStream(self)
    self._streams.append(stream)
    stream._push(self._current)
    return stream

  def emit(self, identity: Optional[Identity]) -> None:
    self._current = identity
    for stream in list(self._streams):
      stream._push(identity)

  def _detach(self, stream: AuthStateStream) -> None:
    if stream in self._streams:
      self._streams.remove(stream)

  @property
  def subscriber_count(self) -> int:
    return len(self._streams)


class IdentityProvider(Protocol):
  """Operations consumed from the external identity/session provider."""

  async def set_persistence(self, mode: PersistenceMode) -> None: ...

  async def sign_in_with_popup(self) -> Identity: ...

  async def sign_in_with_redirect(self) -> None: ...

  async def get_redirect_result(self) -> Optional[Identity]: ...

  def auth_state_changes(self) -> AuthStateStream: ...

  async def sign_out(self) -> None: ...

  async def send_sign_in_link_to_email(self, email: str, continue_url: str) -> None: ...

  def is_sign_in_with_email_link(self, link: str) -> bool: ...

  async def sign_in_with_email_link(self, email: str, link: str) -> Identity: ...


__all__ = [
  "AuthProviderError",
  "AuthStateHub",
  "AuthStateStream",
  "Identity",
  "IdentityProvider",
  "PersistenceMode",
  "POPUP_BLOCKED",
  "POPUP_CLOSED_BY_USER",
  "CANCELLED_POPUP_REQUEST",
  "INVALID_ACTION_CODE",
  "INVALID_EMAIL",
  "EXPIRED_ACTION_CODE",
  "OPERATION_NOT_SUPPORTED",
]
