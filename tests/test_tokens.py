from __future__ import annotations

import asyncio

import pytest
from botocore.exceptions import ClientError

from conftest import FakeClock
from meallog.auth.identity import AuthProviderError, Identity
from meallog.auth.provider import TokenIdentityProvider
from meallog.auth.tokens import InvalidSession, SessionTokens, uid_for_email
from meallog.mailer import ConsoleMailer, MailerError, SesMailer, build_mailer


def _tokens(clock=None) -> SessionTokens:
  return SessionTokens(
    "secret",
    session_ttl_seconds=3600,
    link_ttl_seconds=600,
    clock=clock or FakeClock(),
  )


def test_uid_for_email_is_stable_and_case_insensitive():
  assert uid_for_email("A@x.com ") == uid_for_email("a@x.com")
  assert len(uid_for_email("a@x.com")) == 28


def test_session_round_trip(identity):
  tokens = _tokens()
  assert tokens.verify_session(tokens.issue_session(identity)) == identity


def test_session_expires_on_injected_clock(identity):
  clock = FakeClock()
  tokens = _tokens(clock)
  token = tokens.issue_session(identity)
  clock.advance(3601)
  with pytest.raises(InvalidSession, match="expired"):
    tokens.verify_session(token)


@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
def test_invalid_session_tokens(token):
  with pytest.raises(InvalidSession):
    _tokens().verify_session(token)


def test_link_code_is_not_a_session():
  tokens = _tokens()
  with pytest.raises(InvalidSession, match="malformed"):
    tokens.verify_session(tokens.issue_link_code("a@x.com"))


def test_revoked_session_is_rejected(identity):
  tokens = _tokens()
  token = tokens.issue_session(identity)
  tokens.revoke(token)
  assert tokens.is_revoked(token)
  with pytest.raises(InvalidSession, match="signed out"):
    tokens.verify_session(token)


def test_expired_revocations_are_pruned(identity):
  clock = FakeClock()
  tokens = _tokens(clock)
  old_session = tokens.issue_session(identity)
  old_link = tokens.issue_link_code("a@x.com")
  tokens.revoke(old_session)
  tokens.revoke(old_link)
  assert tokens.revoked_count == 2

  clock.advance(601)
  tokens.revoke(tokens.issue_link_code("a@x.com"))
  assert tokens.revoked_count == 2

  clock.advance(3000)
  tokens.revoke(tokens.issue_link_code("a@x.com"))
  assert tokens.revoked_count == 1
  with pytest.raises(InvalidSession, match="expired"):
    tokens.verify_session(old_session)



def test_link_code_is_single_use():
  tokens = _tokens()
  code = tokens.issue_link_code("a@x.com")
  assert tokens.consume_link_code(code) == "a@x.com"
  with pytest.raises(AuthProviderError) as excinfo:
    tokens.verify_link_code(code)
  assert excinfo.value.code == "auth/invalid-action-code"


def test_expired_link_code():
  clock = FakeClock()
  tokens = _tokens(clock)
  code = tokens.issue_link_code("a@x.com")
  clock.advance(601)
  with pytest.raises(AuthProviderError) as excinfo:
    tokens.verify_link_code(code)
  assert excinfo.value.code == "auth/expired-action-code"


def test_provider_email_link_sign_in_and_sign_out():
  tokens = _tokens()
  mailer = ConsoleMailer()
  provider = TokenIdentityProvider(tokens, mailer)

  async def scenario():
    stream = provider.auth_state_changes()
    await provider.send_sign_in_link_to_email("a@x.com", "http://testserver/login")
    link = mailer.outbox[0]["link"]
    assert provider.is_sign_in_with_email_link(link)
    identity = await provider.sign_in_with_email_link("A@x.com", link)
    token = provider.session_token
    await provider.sign_out()
    events = [await stream.__anext__() for _ in range(3)]
    stream.unsubscribe()
    return identity, token, events

  identity, token, events = asyncio.run(scenario())

  assert identity.email == "a@x.com"
  assert identity.uid == uid_for_email("a@x.com")
  assert events == [None, identity, None]
  assert tokens.is_revoked(token)
  assert provider.current_user is None


def test_provider_rejects_mismatched_email():
  mailer = ConsoleMailer()
  provider = TokenIdentityProvider(_tokens(), mailer)

  async def scenario():
    await provider.send_sign_in_link_to_email("a@x.com", "http://testserver/login?next=feed")
    link = mailer.outbox[0]["link"]
    assert "?next=feed&mode=signIn&oobCode=" in link
    await provider.sign_in_with_email_link("b@x.com", link)

  with pytest.raises(AuthProviderError) as excinfo:
    asyncio.run(scenario())
  assert excinfo.value.code == "auth/invalid-email"


def test_mismatched_email_does_not_use_up_the_link():
  tokens = _tokens()
  mailer = ConsoleMailer()
  provider = TokenIdentityProvider(tokens, mailer)

  async def scenario():
    await provider.send_sign_in_link_to_email("a@x.com", "http://testserver/login")
    link = mailer.outbox[0]["link"]
    with pytest.raises(AuthProviderError):
      await provider.sign_in_with_email_link("b@x.com", link)
    assert tokens.revoked_count == 0
    identity = await provider.sign_in_with_email_link("a@x.com", link)
    assert tokens.revoked_count == 1
    with pytest.raises(AuthProviderError) as excinfo:
      await provider.sign_in_with_email_link("a@x.com", link)
    return identity, excinfo.value.code

  identity, code = asyncio.run(scenario())

  assert identity.email == "a@x.com"
  assert code == "auth/invalid-action-code"



def test_provider_restores_valid_session_and_ignores_bad_one(identity):
  tokens = _tokens()
  restored = TokenIdentityProvider(tokens, ConsoleMailer(), session_token=tokens.issue_session(identity))
  assert restored.current_user == identity
  assert TokenIdentityProvider(tokens, ConsoleMailer(), session_token="garbage").current_user is None


def test_provider_has_no_popup_or_redirect():
  provider = TokenIdentityProvider(_tokens(), ConsoleMailer())
  with pytest.raises(AuthProviderError):
    asyncio.run(provider.sign_in_with_popup())
  with pytest.raises(AuthProviderError):
    asyncio.run(provider.sign_in_with_redirect())
  assert asyncio.run(provider.get_redirect_result()) is None
  assert not provider.is_sign_in_with_email_link("http://testserver/login?mode=resetPassword&oobCode=x")


class FakeSes:
  def __init__(self, fail: bool = False) -> None:
    self.fail = fail
    self.sent = []

  def send_email(self, **kwargs):
    if self.fail:
      raise ClientError({"Error": {"Code": "MessageRejected", "Message": "unverified"}}, "SendEmail")
    self.sent.append(kwargs)


def test_ses_mailer_sends_link():
  client = FakeSes()
  SesMailer("noreply@example.com", client=client).send_sign_in_link("a@x.com", "http://link")
  message = client.sent[0]
  assert message["Destination"] == {"ToAddresses": ["a@x.com"]}
  assert "http://link" in message["Message"]["Body"]["Text"]["Data"]


def test_ses_mailer_wraps_failures():
  with pytest.raises(MailerError):
    SesMailer("noreply@example.com", client=FakeSes(fail=True)).send_sign_in_link("a@x.com", "http://link")


def test_build_mailer_defaults_to_console():
  assert isinstance(build_mailer("console", sender=""), ConsoleMailer)
  assert isinstance(build_mailer("carrier-pigeon", sender=""), ConsoleMailer)
