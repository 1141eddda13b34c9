from __future__ import annotations

import asyncio
import io
from typing import Any, Dict, List, Optional

import pytest
import requests
from PIL import Image

from meallog.auth.identity import AuthProviderError, AuthStateHub, Identity, PersistenceMode
from meallog.config import Settings
from meallog.vision import MealAnalysis


class FakeClock:
  def __init__(self, start: float = 1_700_000_000.0) -> None:
    self.now = start

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds


class StubVision:
  def __init__(self, result: Any = None) -> None:
    self.result = result if result is not None else MealAnalysis(
      title="Pasta pesto",
      details="Pasta with basil pesto",
      ingredients=["pasta", "pesto"],
      recipe="Boil pasta, add pesto.",
      shopping_list="Pantry: pasta",
      health_score=6,
    )
    self.calls: List[tuple] = []

  def analyze(self, image_base64: str, mime_type: str) -> MealAnalysis:
    self.calls.append((image_base64, mime_type))
    if isinstance(self.result, Exception):
      raise self.result
    return self.result


class FakeWhitelist:
  """In-memory whitelist source that records every lookup."""

  def __init__(self, by_field=None, by_key=None, error: Optional[Exception] = None) -> None:
    self.by_field: Dict[str, set] = {name: set(emails) for name, emails in (by_field or {}).items()}
    self.by_key: Dict[str, set] = {name: set(keys) for name, keys in (by_key or {}).items()}
    self.error = error
    self.calls: List[tuple] = []

  def find_by_email(self, collection: str, email: str) -> bool:
    self.calls.append(("query", collection, email))
    if self.error is not None:
      raise self.error
    return email in self.by_field.get(collection, set())

  def get_by_key(self, collection: str, key: str) -> bool:
    self.calls.append(("key", collection, key))
    if self.error is not None:
      raise self.error
    return key in self.by_key.get(collection, set())


class FakeProvider:
  """Scriptable identity provider for exercising the auth state machines."""

  def __init__(self, current: Optional[Identity] = None) -> None:
    self.hub = AuthStateHub(current)
    self.popup_result: Any = None
    self.redirect_result: Any = None
    self.redirect_delay: float = 0.0
    self.persistence: Optional[PersistenceMode] = None
    self.redirect_started = 0
    self.sign_out_calls = 0
    self.sent_links: List[tuple] = []
    self.link_identity: Optional[Identity] = None

  async def set_persistence(self, mode: PersistenceMode) -> None:
    self.persistence = mode

  async def sign_in_with_popup(self) -> Identity:
    if isinstance(self.popup_result, Exception):
      raise self.popup_result
    self.hub.emit(self.popup_result)
    return self.popup_result

  async def sign_in_with_redirect(self) -> None:
    self.redirect_started += 1

  async def get_redirect_result(self) -> Optional[Identity]:
    if self.redirect_delay:
      await asyncio.sleep(self.redirect_delay)
    if isinstance(self.redirect_result, Exception):
      raise self.redirect_result
    return self.redirect_result

  def auth_state_changes(self):
    return self.hub.subscribe()

  async def sign_out(self) -> None:
    self.sign_out_calls += 1
    self.hub.emit(None)

  async def send_sign_in_link_to_email(self, email: str, continue_url: str) -> None:
    self.sent_links.append((email, continue_url))

  def is_sign_in_with_email_link(self, link: str) -> bool:
    return "oobCode=" in link

  async def sign_in_with_email_link(self, email: str, link: str) -> Identity:
    if self.link_identity is None:
      raise AuthProviderError("auth/invalid-action-code")
    if email != self.link_identity.email:
      raise AuthProviderError("auth/invalid-email")
    self.hub.emit(self.link_identity)
    return self.link_identity


class FakeHttpResponse:
  def __init__(self, content: bytes = b"", status_code: int = 200, headers: Optional[dict] = None) -> None:
    self.content = content
    self.status_code = status_code
    self.headers = headers or {}

  @property
  def is_redirect(self) -> bool:
    return "Location" in self.headers and self.status_code in (301, 302, 303, 307, 308)

  def raise_for_status(self) -> None:
    if self.status_code >= 400:
      raise requests.HTTPError(f"{self.status_code} error")


def redirect_to(location: str, status_code: int = 302) -> FakeHttpResponse:
  return FakeHttpResponse(status_code=status_code, headers={"Location": location})


class FakeHttpSession:
  """Returns ``response`` for every request, or each of ``responses`` in turn."""

  def __init__(self, response: Any = None, responses: Optional[List[Any]] = None) -> None:
    self.response = response or FakeHttpResponse(b"\x89PNG", headers={"Content-Type": "image/png"})
    self.responses: List[Any] = list(responses or [])
    self.requested: List[str] = []

  def get(self, url: str, timeout: int = 0, allow_redirects: bool = True) -> FakeHttpResponse:
    self.requested.append(url)
    response = self.responses.pop(0) if self.responses else self.response
    if isinstance(response, Exception):
      raise response
    return response


class FakeResolver:
  """Maps host names to addresses; unknown names resolve to a public address."""

  PUBLIC_ADDRESS = "93.184.216.34"

  def __init__(self, hosts: Optional[Dict[str, List[str]]] = None, error: Optional[Exception] = None) -> None:
    self.hosts = dict(hosts or {})
    self.error = error
    self.lookups: List[str] = []

  def __call__(self, host: str) -> List[str]:
    self.lookups.append(host)
    if self.error is not None:
      raise self.error
    return self.hosts.get(host, [self.PUBLIC_ADDRESS])


def make_image_bytes(fmt: str = "JPEG", size=(8, 8)) -> bytes:
  buffer = io.BytesIO()
  Image.new("RGB", size, color=(200, 120, 40)).save(buffer, format=fmt)
  return buffer.getvalue()


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
  return Settings(
    storage_backend="sqlite",
    sqlite_db_path=tmp_path / "meallog.sqlite",
    uploads_dir=tmp_path / "uploads",
    jwt_secret_key="test-secret",
    allow_list=("admin@example.com",),
    public_base_url="http://testserver",
    gemini_api_key="test-key",
  )


@pytest.fixture
def identity() -> Identity:
  return Identity(uid="uid-a", email="a@x.com", display_name="Anna")


@pytest.fixture
def image_bytes() -> bytes:
  return make_image_bytes()
