"""
Long-lived subscription that keeps the signed-in user in sync with the
identity provider.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Set, Tuple

from meallog.auth.access import AccessDecision, AccessGate
from meallog.auth.identity import AuthStateStream, Identity, IdentityProvider

logger = logging.getLogger(__name__)

IdentityKey = Tuple[str, str]
OutcomeCallback = Callable[[Identity, AccessDecision], None]


def _identity_key(identity: Identity) -> IdentityKey:
  return identity.uid, (identity.email or "").lower()


class SessionObserver:
  """Runs the access gate once for every identity the provider reports.

  Evaluations for the same identity are shared: a second caller awaits the
  check already in flight, and once an outcome is known it is returned
  directly until the provider reports a sign-out.
  """

  def __init__(
    self,
    provider: IdentityProvider,
    gate: AccessGate,
    *,
    on_outcome: Optional[OutcomeCallback] = None,
  ) -> None:
    self._provider = provider
    self._gate = gate
    self._on_outcome = on_outcome
    self._stream: Optional[AuthStateStream] = None
    self._task: Optional["asyncio.Task[None]"] = None
    self._inflight: Dict[IdentityKey, "asyncio.Future[AccessDecision]"] = {}
    self._settled: Dict[IdentityKey, AccessDecision] = {}
    self._notified: Set[Tuple[IdentityKey, bool]] = set()
    self._awaiting_first_event = False
    self.user: Optional[Identity] = None

  @property
  def loading(self) -> bool:
    return self._awaiting_first_event or bool(self._inflight)

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  def start(self) -> None:
    if self.running:
      return
    self._awaiting_first_event = True
    self._stream = self._provider.auth_state_changes()
    self._task = asyncio.ensure_future(self._run(self._stream))

  async def stop(self) -> None:
    if self._stream is not None:
      self._stream.unsubscribe()
      self._stream = None
    if self._task is not None:
      self._task.cancel()
      try:
        await self._task
      except asyncio.CancelledError:
        pass
      self._task = None
    self._awaiting_first_event = False

  async def __aenter__(self) -> "SessionObserver":
    self.start()
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    await self.stop()

  async def _run(self, stream: AuthStateStream) -> None:
    async for identity in stream:
      await self.handle_transition(identity)

  async def handle_transition(self, identity: Optional[Identity]) -> None:
    self._awaiting_first_event = False
    if identity is None:
      logger.info("Auth state changed: signed out")
      self.user = None
      self._settled.clear()
      self._notified.clear()
      return
    logger.info("Auth state changed: %s signed in", identity.email)
    await self.evaluate(identity)

  async def evaluate(self, identity: Identity) -> AccessDecision:
    key = _identity_key(identity)
    settled = self._settled.get(key)
    if settled is not None:
      return settled

    pending = self._inflight.get(key)
    if pending is not None:
      return await asyncio.shield(pending)

    future: "asyncio.Future[AccessDecision]" = asyncio.get_running_loop().create_future()
    self._inflight[key] = future
    try:
      decision = await self._gate.authorize(identity)
    except asyncio.CancelledError:
      future.cancel()
      raise
    except Exception as exc:
      future.set_exception(exc)
      # Mark retrieved so an unawaited failure is not reported twice.
      future.exception()
      raise
    finally:
      self._inflight.pop(key, None)

    future.set_result(decision)
    self._settled[key] = decision
    self.user = identity if decision.granted else None
    self._notify(identity, key, decision)
    return decision

  def _notify(self, identity: Identity, key: IdentityKey, decision: AccessDecision) -> None:
    marker = (key, decision.granted)
    if marker in self._notified or self._on_outcome is None:
      return
    self._notified.add(marker)
    self._on_outcome(identity, decision)


__all__ = ["SessionObserver"]
