"""
Process-local fixed-window request counters keyed by client identifier.

Each limiter instance owns its table and lives as long as the application that
created it. Counts are not shared between processes and reset on restart; a
horizontally scaled deployment enforces one window per instance.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimitExceeded(RuntimeError):
  """Raised when a key has used up its allowance for the current window."""

  def __init__(self, key: str, retry_after: float, message: Optional[str] = None) -> None:
    super().__init__(message or "Too many requests. Please try again later.")
    self.key = key
    self.retry_after = retry_after


@dataclass
class RateRecord:
  key: str
  count: int
  window_start: float


@dataclass(frozen=True)
class RateDecision:
  allowed: bool
  count: int
  retry_after: float = 0.0


class RateLimiter:
  """Count requests per key inside a window that restarts once it has elapsed."""

  def __init__(
    self,
    window_seconds: float,
    max_requests: int,
    *,
    sweep_threshold: int = 1000,
    clock: Callable[[], float] = time.time,
  ) -> None:
    if window_seconds <= 0:
      raise ValueError("window_seconds must be positive")
    if max_requests < 1:
      raise ValueError("max_requests must be at least 1")
    self.window_seconds = float(window_seconds)
    self.max_requests = int(max_requests)
    self.sweep_threshold = int(sweep_threshold)
    self._clock = clock
    self._records: Dict[str, RateRecord] = {}

  def __len__(self) -> int:
    return len(self._records)

  def get(self, key: str) -> Optional[RateRecord]:
    return self._records.get(key)

  def check(self, key: str) -> RateDecision:
    """Register one request for ``key`` and report whether it is allowed."""
    now = self._clock()
    record = self._records.get(key)

    if record is None or now - record.window_start > self.window_seconds:
      record = RateRecord(key=key, count=1, window_start=now)
      self._records[key] = record
      decision = RateDecision(allowed=True, count=1)
    else:
      record.count += 1
      if record.count <= self.max_requests:
        decision = RateDecision(allowed=True, count=record.count)
      else:
        retry_after = max(0.0, record.window_start + self.window_seconds - now)
        decision = RateDecision(allowed=False, count=record.count, retry_after=retry_after)

    if len(self._records) > self.sweep_threshold:
      self.sweep(now)
    return decision

  def hit(self, key: str, message: Optional[str] = None) -> RateDecision:
    """Like :meth:`check` but raise :class:`RateLimitExceeded` on denial."""
    decision = self.check(key)
    if not decision.allowed:
      logger.warning("Rate limit exceeded for %s (%d requests)", key, decision.count)
      raise RateLimitExceeded(key, decision.retry_after, message)
    return decision

  def sweep(self, now: Optional[float] = None) -> int:
    """Drop records whose window started before ``now - window``."""
    if now is None:
      now = self._clock()
    threshold = now - self.window_seconds
    expired = [key for key, record in self._records.items() if record.window_start < threshold]
    for key in expired:
      del self._records[key]
    if expired:
      logger.debug("Swept %d expired rate-limit records", len(expired))
    return len(expired)

  def reset(self) -> None:
    self._records.clear()


__all__ = ["RateLimiter", "RateLimitExceeded", "RateRecord", "RateDecision"]
