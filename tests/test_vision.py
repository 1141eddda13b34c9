from __future__ import annotations

import json

import pytest
import requests

from meallog.vision import (
  MalformedAnalysisError,
  NotAMealError,
  VisionClient,
  VisionRateLimited,
  VisionServiceError,
  parse_analysis,
  strip_code_fence,
)

ANSWER = {
  "isFood": True,
  "title": "Spaghetti bolognese",
  "details": "Pasta with a slow-cooked meat sauce",
  "ingredients": ["spaghetti", {"name": "minced beef"}, "tomato"],
  "recipe": "Brown the beef, add tomato, simmer, serve over pasta.",
  "shoppingList": {"Pantry": ["spaghetti"], "Meat": ["minced beef"]},
  "healthScore": "6/10",
}


class FakePostResponse:
  def __init__(self, status_code=200, payload=None, text=""):
    self.status_code = status_code
    self._payload = payload
    self.text = text or (json.dumps(payload) if payload is not None else "")
    self.reason = "Error"

  @property
  def ok(self) -> bool:
    return self.status_code < 400

  def json(self):
    if self._payload is None:
      raise ValueError("no json")
    return self._payload


class FakePostSession:
  def __init__(self, response):
    self.response = response
    self.requests = []

  def post(self, url, headers=None, json=None, timeout=None):
    self.requests.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
    if isinstance(self.response, Exception):
      raise self.response
    return self.response


def _envelope(text: str) -> dict:
  return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_strip_code_fence():
  assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
  assert strip_code_fence('```\n{"a": 1}```') == '{"a": 1}'
  assert strip_code_fence(' {"a": 1} ') == '{"a": 1}'


def test_parse_fenced_answer():
  analysis = parse_analysis("```json\n" + json.dumps(ANSWER) + "\n```")

  assert analysis.title == "Spaghetti bolognese"
  assert analysis.ingredients == ["spaghetti", "minced beef", "tomato"]
  assert "Pantry" in analysis.shopping_list
  assert analysis.health_score == 6
  assert analysis.to_dict()["healthScore"] == 6
  assert analysis.to_dict()["shoppingList"] == analysis.shopping_list


@pytest.mark.parametrize("raw, expected", [(12, 10), (0, 1), ("6.6", 7), ("about 4", 4), ("n/a", None), (None, None)])
def test_health_score_is_clamped_to_range(raw, expected):
  analysis = parse_analysis(json.dumps({"title": "x", "healthScore": raw}))
  assert analysis.health_score == expected


@pytest.mark.parametrize("literal", ["Infinity", "-Infinity", "NaN"])
def test_non_finite_health_score_is_dropped(literal):
  analysis = parse_analysis('{"isFood": true, "title": "Soup", "healthScore": %s}' % literal)
  assert analysis.title == "Soup"
  assert analysis.health_score is None


def test_not_food_is_reported_distinctly():
  with pytest.raises(NotAMealError):
    parse_analysis('{"isFood": false}')


@pytest.mark.parametrize("text", ["", "Sorry, I cannot help with that.", "[1, 2]"])
def test_malformed_answers(text):
  with pytest.raises(MalformedAnalysisError):
    parse_analysis(text)


def test_client_sends_image_and_parses_answer():
  session = FakePostSession(FakePostResponse(payload=_envelope(json.dumps(ANSWER))))
  client = VisionClient("secret", model="gemini-test", session=session)

  analysis = client.analyze("aGVsbG8=", "image/png")

  assert analysis.title == "Spaghetti bolognese"
  sent = session.requests[0]
  assert "gemini-test:generateContent" in sent["url"]
  assert sent["headers"]["x-goog-api-key"] == "secret"
  inline = sent["json"]["contents"][0]["parts"][1]["inline_data"]
  assert inline == {"mime_type": "image/png", "data": "aGVsbG8="}


def test_client_requires_api_key():
  client = VisionClient("", model="m", session=FakePostSession(FakePostResponse()))
  with pytest.raises(VisionServiceError, match="GEMINI_API_KEY"):
    client.analyze("x", "image/jpeg")


def test_client_maps_429_to_rate_limited():
  client = VisionClient("k", model="m", session=FakePostSession(FakePostResponse(status_code=429, text="quota")))
  with pytest.raises(VisionRateLimited):
    client.analyze("x", "image/jpeg")


def test_client_reports_invalid_key():
  response = FakePostResponse(status_code=400, text="API key not valid. Please pass a valid API key.")
  client = VisionClient("k", model="m", session=FakePostSession(response))
  with pytest.raises(VisionServiceError, match="Invalid API key"):
    client.analyze("x", "image/jpeg")


def test_client_wraps_transport_errors():
  client = VisionClient("k", model="m", session=FakePostSession(requests.ConnectionError("refused")))
  with pytest.raises(VisionServiceError, match="refused"):
    client.analyze("x", "image/jpeg")


def test_blocked_prompt_is_a_service_error():
  payload = {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}}
  client = VisionClient("k", model="m", session=FakePostSession(FakePostResponse(payload=payload)))
  with pytest.raises(VisionServiceError, match="SAFETY"):
    client.analyze("x", "image/jpeg")
