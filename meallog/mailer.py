"""
Outbound mail for sign-in links.

Production sends through Amazon SES; development logs the link instead so it
can be copied from the console.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

SIGN_IN_SUBJECT = "Your sign-in link"
SIGN_IN_BODY = (
  "Hello,\n\n"
  "Use the link below to sign in to your meal log. It can be used once and expires soon.\n\n"
  "{link}\n\n"
  "If you did not request this email you can ignore it.\n"
)


class MailerError(RuntimeError):
  """Raised when a message could not be handed to the mail service."""


class ConsoleMailer:
  """Logs messages instead of sending them; keeps a copy for inspection."""

  def __init__(self) -> None:
    self.outbox: List[Dict[str, str]] = []

  def send_sign_in_link(self, email: str, link: str) -> None:
    self.outbox.append({"to": email, "link": link})
    logger.info("Sign-in link for %s: %s", email, link)


class SesMailer:
  def __init__(self, sender: str, *, region: Optional[str] = None, client: Any = None) -> None:
    if not sender:
      raise RuntimeError("MAIL_SENDER must be set when MAIL_BACKEND=ses.")
    self.sender = sender
    if client is None:
      client_kwargs: Dict[str, Any] = {}
      if region:
        client_kwargs["region_name"] = region
      client = boto3.client("ses", **client_kwargs)
    self._client = client

  def send_sign_in_link(self, email: str, link: str) -> None:
    try:
      self._client.send_email(
        Source=self.sender,
        Destination={"ToAddresses": [email]},
        Message={
          "Subject": {"Data": SIGN_IN_SUBJECT, "Charset": "UTF-8"},
          "Body": {"Text": {"Data": SIGN_IN_BODY.format(link=link), "Charset": "UTF-8"}},
        },
      )
    except (BotoCoreError, ClientError) as exc:
      logger.exception("SES send to %s failed: %s", email, exc)
      raise MailerError(f"Sending sign-in link failed: {exc}") from exc


def build_mailer(backend: str, *, sender: str, region: Optional[str] = None):
  if backend == "ses":
    return SesMailer(sender, region=region)
  if backend != "console":
    logger.warning("Unknown MAIL_BACKEND %r; using console mailer", backend)
  return ConsoleMailer()


__all__ = ["ConsoleMailer", "SesMailer", "MailerError", "build_mailer"]
