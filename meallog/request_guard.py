"""
Request-level protection applied before any view runs.

Guarded paths reject well-known automation user agents and are throttled per
client IP. Responses are plain text so that scripted clients get a terse
answer rather than a rendered page.
"""

from __future__ import annotations

import fnmatch
import ipaddress
import logging
import socket
from typing import Callable, Iterable, List, Optional, Sequence

from flask import Flask, Request, Response, request

from meallog.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

BLOCKED_AGENT_PATTERNS = (
  "bot",
  "spider",
  "crawl",
  "headless",
  "puppeteer",
  "selenium",
  "python-requests",
  "node-fetch",
  "axios",
  "curl",
  "wget",
)

# Search indexing stays allowed even though it matches "bot".
ALLOWED_CRAWLERS = ("googlebot",)

BOT_RESPONSE_TEXT = "Access Denied: Automated requests not allowed."
RATE_LIMIT_RESPONSE_TEXT = "Too many requests. Please try again later."


def client_ip(req: Request) -> str:
  """Return the originating client address as reported by the proxy chain."""
  forwarded = req.headers.get("X-Forwarded-For", "")
  if forwarded:
    first = forwarded.split(",")[0].strip()
    if first:
      return first
  real_ip = (req.headers.get("X-Real-IP") or "").strip()
  return real_ip or "127.0.0.1"


def is_blocked_agent(user_agent: Optional[str]) -> bool:
  agent = (user_agent or "").lower()
  if any(crawler in agent for crawler in ALLOWED_CRAWLERS):
    return False
  return any(pattern in agent for pattern in BLOCKED_AGENT_PATTERNS)


def path_is_guarded(path: str, patterns: Iterable[str]) -> bool:
  """Match ``path`` against exact routes and ``prefix/*`` wildcards."""
  for pattern in patterns:
    if pattern.endswith("/*"):
      prefix = pattern[:-2]
      if path == prefix or path.startswith(prefix + "/"):
        return True
    elif fnmatch.fnmatchcase(path, pattern):
      return True
  return False


Resolver = Callable[[str], Sequence[str]]


def resolve_host(host: str) -> List[str]:
  """Return every address ``host`` resolves to. Raises ``OSError`` on failure."""
  infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
  return [str(info[4][0]) for info in infos]


def is_public_address(address: str) -> bool:
  """False for private, loopback, link-local, reserved and multicast addresses."""
  try:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
  except ValueError:
    return False
  if ip.version == 6 and ip.ipv4_mapped is not None:
    ip = ip.ipv4_mapped
  return ip.is_global and not ip.is_multicast


def is_public_host(host: Optional[str], resolve: Resolver = resolve_host) -> bool:
  """True when ``host`` is, or only resolves to, public addresses.

  A name that resolves to several addresses is refused if any of them is
  internal.
  """
  if not host:
    return False
  try:
    ipaddress.ip_address(host)
  except ValueError:
    addresses = list(resolve(host))
  else:
    addresses = [host]
  return bool(addresses) and all(is_public_address(address) for address in addresses)


def install_request_guard(app: Flask, limiter: RateLimiter, patterns: Sequence[str]) -> None:
  """Register the bot filter and inbound rate limiter on ``app``."""
  guarded = tuple(patterns)

  @app.before_request
  def _guard_request() -> Optional[Response]:
    path = request.path
    if path == "/favicon.ico" or not path_is_guarded(path, guarded):
      return None

    ip = client_ip(request)
    user_agent = request.headers.get("User-Agent", "")
    if is_blocked_agent(user_agent):
      logger.warning("Blocked suspected bot %r from %s", user_agent, ip)
      return Response(BOT_RESPONSE_TEXT, status=403, mimetype="text/plain")

    decision = limiter.check(ip)
    if not decision.allowed:
      logger.warning("Rate limit exceeded for %s on %s", ip, path)
      response = Response(RATE_LIMIT_RESPONSE_TEXT, status=429, mimetype="text/plain")
      response.headers["Retry-After"] = str(int(decision.retry_after) + 1)
      return response
    return None


__all__ = [
  "install_request_guard",
  "client_ip",
  "is_blocked_agent",
  "path_is_guarded",
  "is_public_address",
  "is_public_host",
  "resolve_host",
  "BLOCKED_AGENT_PATTERNS",
]
