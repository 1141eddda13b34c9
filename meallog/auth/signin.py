"""
Interactive sign-in orchestration.

Which method is used (popup or full-page redirect) and how the session is
persisted are looked up in a :class:`PolicyTable` keyed by environment
signals. Browser quirks change over time, so the table is data rather than
branching logic and callers can supply their own.

The magic-link variant, :class:`EmailLinkSignIn`, checks the whitelist before
any email is sent.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from meallog.auth.access import AccessDecision, AccessDenied, AccessGate, normalise_email
from meallog.auth.identity import (
  CANCELLED_POPUP_REQUEST,
  INVALID_ACTION_CODE,
  POPUP_BLOCKED,
  POPUP_CLOSED_BY_USER,
  AuthProviderError,
  AuthStateStream,
  Identity,
  IdentityProvider,
  PersistenceMode,
)
from meallog.auth.keyvalue import KeyValueStore
from meallog.auth.observer import OutcomeCallback, SessionObserver
from meallog.config import Settings

logger = logging.getLogger(__name__)

REDIRECT_PENDING_KEY = "redirect_pending"
EMAIL_FOR_SIGN_IN_KEY = "email_for_sign_in"

# Popup failures after which a redirect is attempted without telling the user.
BENIGN_POPUP_ERRORS = frozenset({POPUP_BLOCKED, POPUP_CLOSED_BY_USER, CANCELLED_POPUP_REQUEST})

Authorize = Callable[[Identity], Awaitable[AccessDecision]]

_MOBILE_PATTERN = re.compile(r"android|iphone|ipad|ipod|mobile|iemobile|opera mini", re.IGNORECASE)
_IOS_PATTERN = re.compile(r"iphone|ipad|ipod", re.IGNORECASE)


class Strategy(str, enum.Enum):
  POPUP = "popup"
  REDIRECT = "redirect"


class SignInState(str, enum.Enum):
  IDLE = "idle"
  AWAITING_INTERACTIVE = "awaiting-interactive"
  AWAITING_REDIRECT_RESULT = "awaiting-redirect-result"
  AUTHORIZED = "authorized"
  DENIED = "denied"
  DENIED_TIMEOUT = "denied-timeout"


TERMINAL_STATES = frozenset({SignInState.AUTHORIZED, SignInState.DENIED, SignInState.DENIED_TIMEOUT})


class EmailConfirmationRequired(RuntimeError):
  """Raised when a sign-in link is opened without a known email address."""


@dataclass(frozen=True)
class Environment:
  standalone: bool = False
  mobile: bool = False
  engine: str = "other"

  @classmethod
  def from_user_agent(cls, user_agent: Optional[str], *, standalone: bool = False) -> "Environment":
    agent = user_agent or ""
    lowered = agent.lower()
    if _IOS_PATTERN.search(agent):
      # Every browser on iOS runs on WebKit regardless of its branding.
      engine = "webkit"
    elif "firefox" in lowered or "gecko/" in lowered:
      engine = "gecko"
    elif "chrome" in lowered or "chromium" in lowered or "edg" in lowered:
      engine = "blink"
    elif "applewebkit" in lowered:
      engine = "webkit"
    else:
      engine = "other"
    return cls(standalone=standalone, mobile=bool(_MOBILE_PATTERN.search(agent)), engine=engine)


@dataclass(frozen=True)
class SignInPolicy:
  strategy: Strategy
  persistence: PersistenceMode

  def to_dict(self) -> dict:
    return {"strategy": self.strategy.value, "persistence": self.persistence.value}


PolicyRule = Tuple[str, Callable[[Environment], bool], SignInPolicy]


class PolicyTable:
  """First matching row wins; ``default`` applies when nothing matches."""

  def __init__(self, rows: Sequence[PolicyRule], default: SignInPolicy) -> None:
    self.rows: List[PolicyRule] = list(rows)
    self.default = default

  def select(self, environment: Environment) -> SignInPolicy:
    return self.match(environment)[1]

  def match(self, environment: Environment) -> Tuple[str, SignInPolicy]:
    for name, predicate, policy in self.rows:
      if predicate(environment):
        return name, policy
    return "default", self.default


DEFAULT_POLICY_TABLE = PolicyTable(
  [
    ("standalone", lambda env: env.standalone, SignInPolicy(Strategy.REDIRECT, PersistenceMode.LOCAL)),
    (
      "mobile-webkit",
      lambda env: env.mobile and env.engine == "webkit",
      SignInPolicy(Strategy.REDIRECT, PersistenceMode.SESSION),
    ),
    ("mobile", lambda env: env.mobile, SignInPolicy(Strategy.REDIRECT, PersistenceMode.LOCAL)),
  ],
  default=SignInPolicy(Strategy.POPUP, PersistenceMode.LOCAL),
)


class SignInOrchestrator:
  def __init__(
    self,
    provider: IdentityProvider,
    authorize: Authorize,
    markers: KeyValueStore,
    *,
    table: PolicyTable = DEFAULT_POLICY_TABLE,
    redirect_timeout: float = 10.0,
  ) -> None:
    self._provider = provider
    self._authorize = authorize
    self._markers = markers
    self.table = table
    self.redirect_timeout = redirect_timeout
    self.state = SignInState.IDLE
    self.message: Optional[str] = None
    self.identity: Optional[Identity] = None
    self.decision: Optional[AccessDecision] = None

  @property
  def redirect_pending(self) -> bool:
    return self._markers.get(REDIRECT_PENDING_KEY) is not None

  def _transition(self, state: SignInState, message: Optional[str] = None) -> SignInState:
    logger.debug("Sign-in state %s -> %s", self.state.value, state.value)
    self.state = state
    self.message = message
    return state

  async def sign_in(self, environment: Environment) -> SignInState:
    """Start an interactive sign-in using the policy for ``environment``."""
    policy = self.table.select(environment)
    try:
      await self._provider.set_persistence(policy.persistence)
    except AuthProviderError as exc:
      logger.warning("Could not set %s persistence: %s", policy.persistence.value, exc)

    if policy.strategy is Strategy.REDIRECT:
      return await self._start_redirect()

    self._transition(SignInState.AWAITING_INTERACTIVE)
    try:
      identity = await self._provider.sign_in_with_popup()
    except AuthProviderError as exc:
      if exc.code in BENIGN_POPUP_ERRORS:
        logger.info("Popup sign-in unavailable (%s); falling back to redirect", exc.code)
        return await self._start_redirect()
      logger.error("Popup sign-in failed: %s", exc)
      return self._transition(SignInState.DENIED, f"Sign-in failed: {exc}")
    return await self._settle(identity)

  async def _start_redirect(self) -> SignInState:
    self._markers.set(REDIRECT_PENDING_KEY, "1")
    self._transition(SignInState.AWAITING_REDIRECT_RESULT)
    try:
      await self._provider.sign_in_with_redirect()
    except AuthProviderError as exc:
      self._markers.remove(REDIRECT_PENDING_KEY)
      logger.error("Redirect sign-in failed: %s", exc)
      return self._transition(SignInState.DENIED, f"Sign-in failed: {exc}")
    return self.state

  async def resume(self) -> SignInState:
    """Collect the outcome of a redirect started before the page reloaded."""
    if not self.redirect_pending:
      return self.state

    self._transition(SignInState.AWAITING_REDIRECT_RESULT)
    stream = self._provider.auth_state_changes()
    try:
      identity = await asyncio.wait_for(self._await_redirect_identity(stream), self.redirect_timeout)
    except asyncio.TimeoutError:
      logger.warning("No redirect result after %.1fs", self.redirect_timeout)
      return self._transition(
        SignInState.DENIED_TIMEOUT, "Sign-in did not complete in time. Please try again."
      )
    except AuthProviderError as exc:
      logger.error("Fetching the redirect result failed: %s", exc)
      return self._transition(SignInState.DENIED, f"Sign-in failed: {exc}")
    finally:
      stream.unsubscribe()
      self._markers.remove(REDIRECT_PENDING_KEY)

    if identity is None:
      return self._transition(SignInState.DENIED, "Sign-in was not completed.")
    return await self._settle(identity)

  async def _await_redirect_identity(self, stream: AuthStateStream) -> Optional[Identity]:
    result_task = asyncio.ensure_future(self._provider.get_redirect_result())
    event_task = asyncio.ensure_future(self._next_identity(stream))
    try:
      done, _ = await asyncio.wait({result_task, event_task}, return_when=asyncio.FIRST_COMPLETED)
      if result_task in done:
        identity = result_task.result()
        if identity is not None:
          return identity
        # Definitive absence: nothing to wait for from the redirect itself.
        self._markers.remove(REDIRECT_PENDING_KEY)
        return await event_task
      return event_task.result()
    finally:
      for task in (result_task, event_task):
        if not task.done():
          task.cancel()

  @staticmethod
  async def _next_identity(stream: AuthStateStream) -> Optional[Identity]:
    async for identity in stream:
      if identity is not None:
        return identity
    return None

  async def _settle(self, identity: Identity) -> SignInState:
    self.identity = identity
    decision = await self._authorize(identity)
    self.decision = decision
    if decision.granted:
      return self._transition(SignInState.AUTHORIZED)
    if identity.email:
      return self._transition(SignInState.DENIED, f"Access denied: {identity.email} is not on the list.")
    return self._transition(SignInState.DENIED, "Access denied: no email address available.")


class EmailLinkSignIn:
  """Passwordless sign-in through a one-time emailed link."""

  def __init__(
    self,
    provider: IdentityProvider,
    gate: AccessGate,
    store: KeyValueStore,
    *,
    continue_url: str,
    authorize: Optional[Authorize] = None,
  ) -> None:
    self._provider = provider
    self._gate = gate
    self._store = store
    self.continue_url = continue_url
    self._authorize = authorize or gate.authorize

  async def send_link(self, email: str) -> None:
    """Send a sign-in link, but only to whitelisted addresses.

    Raises :class:`AccessDenied` for unknown addresses and lets
    :class:`~meallog.auth.access.WhitelistUnavailable` propagate, so no mail
    quota is spent when authorization cannot be confirmed.
    """
    address = normalise_email(email)
    if not address:
      raise ValueError("Email is required.")
    source = self._gate.is_whitelisted(address)
    if source is None:
      logger.warning("Refusing to send sign-in link to %s: not whitelisted", address)
      raise AccessDenied(address)
    logger.info("Sending sign-in link to %s (listed in %s)", address, source)
    await self._provider.send_sign_in_link_to_email(address, self.continue_url)
    self._store.set(EMAIL_FOR_SIGN_IN_KEY, address)

  def pending_email(self) -> Optional[str]:
    return self._store.get(EMAIL_FOR_SIGN_IN_KEY)

  async def complete(self, link: str, email: Optional[str] = None) -> Tuple[Identity, AccessDecision]:
    if not self._provider.is_sign_in_with_email_link(link):
      raise AuthProviderError(INVALID_ACTION_CODE, "Not a sign-in link.")
    address = normalise_email(email) or normalise_email(self._store.get(EMAIL_FOR_SIGN_IN_KEY))
    if not address:
      raise EmailConfirmationRequired("Confirm your email address to finish signing in.")

    await self._provider.set_persistence(PersistenceMode.LOCAL)
    identity = await self._provider.sign_in_with_email_link(address, link)
    self._store.remove(EMAIL_FOR_SIGN_IN_KEY)
    decision = await self._authorize(identity)
    return identity, decision


def build_sign_in(
  settings: Settings,
  provider: IdentityProvider,
  gate: AccessGate,
  markers: KeyValueStore,
  *,
  on_outcome: Optional[OutcomeCallback] = None,
  table: PolicyTable = DEFAULT_POLICY_TABLE,
) -> Tuple[SignInOrchestrator, SessionObserver]:
  """Wire an orchestrator and observer that share one gate evaluation per identity."""
  observer = SessionObserver(provider, gate, on_outcome=on_outcome)
  orchestrator = SignInOrchestrator(
    provider,
    observer.evaluate,
    markers,
    table=table,
    redirect_timeout=settings.redirect_result_timeout_seconds,
  )
  return orchestrator, observer


__all__ = [
  "DEFAULT_POLICY_TABLE",
  "BENIGN_POPUP_ERRORS",
  "EMAIL_FOR_SIGN_IN_KEY",
  "REDIRECT_PENDING_KEY",
  "EmailConfirmationRequired",
  "EmailLinkSignIn",
  "Environment",
  "PolicyTable",
  "SignInOrchestrator",
  "SignInPolicy",
  "SignInState",
  "Strategy",
  "TERMINAL_STATES",
  "build_sign_in",
]
