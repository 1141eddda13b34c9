"""
Authorization of signed-in identities against the whitelist.

A user is allowed in when their email is on the hardcoded allow-list, when a
recent cached grant exists, or when one of the configured whitelist lookups
finds them. Everything else, including a lookup that could not be completed,
is a denial that also ends the provider session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol, Sequence

from meallog.auth.identity import AuthProviderError, Identity
from meallog.auth.keyvalue import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_VALIDITY_SECONDS = 30 * 24 * 60 * 60

REASON_NO_EMAIL = "no email"
REASON_NOT_WHITELISTED = "not whitelisted"
REASON_LOOKUP_FAILED = "lookup failed"


class AccessDenied(RuntimeError):
  """Raised when an email is not permitted to use the application."""

  def __init__(self, email: Optional[str], reason: str = REASON_NOT_WHITELISTED) -> None:
    super().__init__(f"Email {email} not authorized" if email else "No email address available")
    self.email = email
    self.reason = reason


class WhitelistUnavailable(RuntimeError):
  """Raised when the whitelist could not be consulted."""


def normalise_email(email: Optional[str]) -> str:
  return (email or "").strip().lower()


@dataclass(frozen=True)
class AccessDecision:
  granted: bool
  reason: str
  source: Optional[str] = None


@dataclass(frozen=True)
class AccessCacheEntry:
  email: str
  granted: bool
  timestamp: float


class AccessCache:
  """Remembers recent grants so repeat checks skip the remote whitelist."""

  def __init__(
    self,
    store: KeyValueStore,
    *,
    validity_seconds: float = CACHE_VALIDITY_SECONDS,
    clock: Callable[[], float] = time.time,
  ) -> None:
    self._store = store
    self.validity_seconds = validity_seconds
    self._clock = clock

  @staticmethod
  def _keys(email: str) -> tuple:
    return f"access_{email}", f"access_ts_{email}"

  def get(self, email: str) -> Optional[AccessCacheEntry]:
    value_key, ts_key = self._keys(email)
    value = self._store.get(value_key)
    raw_ts = self._store.get(ts_key)
    if value is None or raw_ts is None:
      return None
    try:
      timestamp = float(raw_ts)
    except ValueError:
      return None
    return AccessCacheEntry(email=email, granted=value == "true", timestamp=timestamp)

  def is_valid_grant(self, email: str) -> bool:
    entry = self.get(email)
    if entry is None or not entry.granted:
      return False
    return self._clock() - entry.timestamp < self.validity_seconds

  def grant(self, email: str) -> None:
    value_key, ts_key = self._keys(email)
    self._store.set(value_key, "true")
    self._store.set(ts_key, repr(self._clock()))

  def clear(self, email: str) -> None:
    for key in self._keys(email):
      self._store.remove(key)


class WhitelistSource(Protocol):
  """Read access to the whitelist collections in the document store."""

  def find_by_email(self, collection: str, email: str) -> bool: ...

  def get_by_key(self, collection: str, key: str) -> bool: ...


class WhitelistLookup:
  name = "lookup"

  def lookup(self, email: str) -> bool:
    raise NotImplementedError


class FieldQueryLookup(WhitelistLookup):
  """Equality filter on the ``email`` field of a collection."""

  def __init__(self, source: WhitelistSource, collection: str) -> None:
    self.source = source
    self.collection = collection
    self.name = f"{collection}:query"

  def lookup(self, email: str) -> bool:
    return self.source.find_by_email(self.collection, email)


class KeyLookup(WhitelistLookup):
  """Direct read of the record whose identifier is the email itself."""

  def __init__(self, source: WhitelistSource, collection: str) -> None:
    self.source = source
    self.collection = collection
    self.name = f"{collection}:key"

  def lookup(self, email: str) -> bool:
    return self.source.get_by_key(self.collection, email)


def default_lookups(source: WhitelistSource, collections: Iterable[str]) -> List[WhitelistLookup]:
  """Field query then key lookup, for each collection in order."""
  lookups: List[WhitelistLookup] = []
  for collection in collections:
    lookups.append(FieldQueryLookup(source, collection))
    lookups.append(KeyLookup(source, collection))
  return lookups


class AccessGate:
  def __init__(
    self,
    cache: AccessCache,
    lookups: Sequence[WhitelistLookup],
    *,
    allow_list: Iterable[str] = (),
    sign_out: Optional[Callable[[], Awaitable[None]]] = None,
  ) -> None:
    self.cache = cache
    self.lookups = list(lookups)
    self.allow_list = frozenset(normalise_email(email) for email in allow_list)
    self._sign_out = sign_out

  def is_whitelisted(self, email: str) -> Optional[str]:
    """Return the name of the source that lists ``email``, or ``None``.

    Does not read or write the cache. Raises :class:`WhitelistUnavailable`
    if a lookup fails before any source matched.
    """
    email = normalise_email(email)
    if not email:
      return None
    if email in self.allow_list:
      return "allow_list"
    for strategy in self.lookups:
      try:
        found = strategy.lookup(email)
      except Exception as exc:
        raise WhitelistUnavailable(f"Whitelist lookup {strategy.name} failed: {exc}") from exc
      if found:
        return strategy.name
    return None

  async def authorize(self, identity: Identity) -> AccessDecision:
    email = normalise_email(identity.email)
    if not email:
      logger.warning("Access denied for uid %s: identity has no email", identity.uid)
      await self._end_session()
      return AccessDecision(granted=False, reason=REASON_NO_EMAIL)

    if self.cache.is_valid_grant(email):
      logger.info("Access granted via cache for %s", email)
      return AccessDecision(granted=True, reason="cached", source="cache")

    try:
      source = self.is_whitelisted(email)
    except WhitelistUnavailable as exc:
      logger.error("Whitelist check failed for %s: %s", email, exc)
      self.cache.clear(email)
      await self._end_session()
      return AccessDecision(granted=False, reason=REASON_LOOKUP_FAILED)

    if source is not None:
      logger.info("Access granted via %s for %s", source, email)
      self.cache.grant(email)
      return AccessDecision(granted=True, reason="whitelisted", source=source)

    logger.warning("Access denied: %s is not whitelisted", email)
    self.cache.clear(email)
    await self._end_session()
    return AccessDecision(granted=False, reason=REASON_NOT_WHITELISTED)

  async def _end_session(self) -> None:
    if self._sign_out is None:
      return
    try:
      await self._sign_out()
    except AuthProviderError as exc:
      logger.error("Sign-out after denial failed: %s", exc)


__all__ = [
  "AccessCache",
  "AccessCacheEntry",
  "AccessDecision",
  "AccessDenied",
  "AccessGate",
  "FieldQueryLookup",
  "KeyLookup",
  "WhitelistLookup",
  "WhitelistSource",
  "WhitelistUnavailable",
  "default_lookups",
  "normalise_email",
  "CACHE_VALIDITY_SECONDS",
]
