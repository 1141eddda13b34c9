from __future__ import annotations

import asyncio
import sqlite3

import pytest

from conftest import FakeClock, FakeWhitelist
from meallog.auth.access import (
  AccessCache,
  AccessGate,
  FieldQueryLookup,
  KeyLookup,
  WhitelistUnavailable,
  default_lookups,
)
from meallog.auth.identity import Identity
from meallog.auth.keyvalue import MemoryStore
from meallog.storage import SqliteStore

COLLECTIONS = ("allowed_users", "users_whitelist")


class SignOutRecorder:
  def __init__(self) -> None:
    self.calls = 0

  async def __call__(self) -> None:
    self.calls += 1


def _gate(source, clock, *, store=None, allow_list=()):
  sign_out = SignOutRecorder()
  cache = AccessCache(store if store is not None else MemoryStore(), clock=clock)
  gate = AccessGate(cache, default_lookups(source, COLLECTIONS), allow_list=allow_list, sign_out=sign_out)
  return gate, sign_out


def test_default_lookups_order():
  lookups = default_lookups(FakeWhitelist(), COLLECTIONS)
  assert [lookup.name for lookup in lookups] == [
    "allowed_users:query",
    "allowed_users:key",
    "users_whitelist:query",
    "users_whitelist:key",
  ]
  assert isinstance(lookups[0], FieldQueryLookup)
  assert isinstance(lookups[1], KeyLookup)


def test_identity_without_email_is_always_denied():
  clock = FakeClock()
  store = MemoryStore({"access_": "true", "access_ts_": repr(clock())})
  source = FakeWhitelist(by_field={"allowed_users": {""}})
  gate, sign_out = _gate(source, clock, store=store, allow_list=("",))

  decision = asyncio.run(gate.authorize(Identity(uid="u1", email=None)))

  assert decision.granted is False
  assert decision.reason == "no email"
  assert source.calls == []
  assert sign_out.calls == 1


def test_valid_cache_grants_without_remote_call(identity):
  clock = FakeClock()
  source = FakeWhitelist()
  gate, _ = _gate(source, clock)
  gate.cache.grant("a@x.com")

  decision = asyncio.run(gate.authorize(identity))

  assert decision.granted is True
  assert decision.source == "cache"
  assert source.calls == []


def test_stale_cache_is_ignored(identity):
  clock = FakeClock()
  source = FakeWhitelist()
  gate, sign_out = _gate(source, clock)
  gate.cache.grant("a@x.com")
  clock.advance(31 * 24 * 60 * 60)

  decision = asyncio.run(gate.authorize(identity))

  assert decision.granted is False
  assert len(source.calls) == 4
  assert gate.cache.get("a@x.com") is None
  assert sign_out.calls == 1


def test_hardcoded_allow_list_grants_and_caches():
  clock = FakeClock()
  source = FakeWhitelist()
  gate, _ = _gate(source, clock, allow_list=("Admin@Example.com",))

  decision = asyncio.run(gate.authorize(Identity(uid="u", email="admin@example.com")))

  assert decision.granted is True
  assert decision.source == "allow_list"
  assert source.calls == []
  assert gate.cache.is_valid_grant("admin@example.com")


def test_key_lookup_fallback_grants_when_field_query_misses(identity):
  clock = FakeClock()
  source = FakeWhitelist(by_key={"allowed_users": {"a@x.com"}})
  gate, sign_out = _gate(source, clock)

  decision = asyncio.run(gate.authorize(identity))

  assert decision.granted is True
  assert decision.source == "allowed_users:key"
  assert source.calls == [
    ("query", "allowed_users", "a@x.com"),
    ("key", "allowed_users", "a@x.com"),
  ]
  assert gate.cache.is_valid_grant("a@x.com")
  assert sign_out.calls == 0


def test_second_collection_is_consulted(identity):
  source = FakeWhitelist(by_field={"users_whitelist": {"a@x.com"}})
  gate, _ = _gate(source, FakeClock())

  decision = asyncio.run(gate.authorize(identity))

  assert decision.granted is True
  assert decision.source == "users_whitelist:query"


def test_unknown_user_is_denied_cache_cleared_and_signed_out(identity):
  clock = FakeClock()
  store = MemoryStore({"access_a@x.com": "false", "access_ts_a@x.com": repr(clock())})
  source = FakeWhitelist()
  gate, sign_out = _gate(source, clock, store=store)

  decision = asyncio.run(gate.authorize(identity))

  assert decision.granted is False
  assert decision.reason == "not whitelisted"
  assert "access_a@x.com" not in store
  assert "access_ts_a@x.com" not in store
  assert sign_out.calls == 1


def test_lookup_failure_fails_closed(identity):
  source = FakeWhitelist(error=sqlite3.OperationalError("database is locked"))
  gate, sign_out = _gate(source, FakeClock())

  decision = asyncio.run(gate.authorize(identity))

  assert decision.granted is False
  assert decision.reason == "lookup failed"
  assert sign_out.calls == 1


def test_repeated_authorize_for_cached_identity_is_idempotent(identity):
  source = FakeWhitelist(by_field={"allowed_users": {"a@x.com"}})
  gate, _ = _gate(source, FakeClock())

  first = asyncio.run(gate.authorize(identity))
  calls_after_first = len(source.calls)
  second = asyncio.run(gate.authorize(identity))

  assert first.granted and second.granted
  assert len(source.calls) == calls_after_first == 1


def test_email_is_normalised_before_lookup():
  source = FakeWhitelist(by_field={"allowed_users": {"a@x.com"}})
  gate, _ = _gate(source, FakeClock())

  decision = asyncio.run(gate.authorize(Identity(uid="u", email="  A@X.com ")))

  assert decision.granted is True


def test_is_whitelisted_does_not_touch_cache():
  store = MemoryStore()
  source = FakeWhitelist(by_field={"allowed_users": {"a@x.com"}})
  gate, _ = _gate(source, FakeClock(), store=store)

  assert gate.is_whitelisted("a@x.com") == "allowed_users:query"
  assert gate.is_whitelisted("b@x.com") is None
  assert len(store) == 0


def test_is_whitelisted_raises_when_lookup_fails():
  gate, _ = _gate(FakeWhitelist(error=RuntimeError("permission denied")), FakeClock())
  with pytest.raises(WhitelistUnavailable):
    gate.is_whitelisted("a@x.com")


def test_key_written_in_mixed_case_is_found_by_sqlite_store(tmp_path):
  store = SqliteStore(tmp_path / "meals.sqlite", COLLECTIONS)
  store.initialise()
  store.add_whitelist_entry("allowed_users", key="Anna@Example.com")
  gate, sign_out = _gate(store, FakeClock())

  decision = asyncio.run(gate.authorize(Identity(uid="u", email="Anna@Example.com")))

  assert decision.granted is True
  assert decision.source == "allowed_users:key"
  assert sign_out.calls == 0
