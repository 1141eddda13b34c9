"""
Client for the hosted vision model that turns a meal photo into structured
metadata (title, description, ingredients, recipe, shopping list and a health
score).
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

ANALYSIS_PROMPT = """Analyse this photo of a meal.
If it is NOT a meal, return { "isFood": false }.
If it IS a meal, return a JSON object with the following fields:
{
  "isFood": true,
  "title": "A short, catchy title for the dish (max 6 words)",
  "details": "A detailed description of the dish",
  "ingredients": ["ingredient 1", "ingredient 2", "etc (strings only, no objects)"],
  "recipe": "step-by-step preparation",
  "shoppingList": "a clear shopping list for 2 people, grouped by supermarket section (e.g. Vegetables, Dairy, Pantry)",
  "healthScore": "A strict, realistic score between 1 and 10. Be critical: 10 is only for perfectly balanced, very healthy meals with lots of vegetables and few processed products. Pizza or fries are typically 4-5, a standard pasta 6-7."
}
Return ONLY the JSON."""

_FENCE_PATTERN = re.compile(r"```(?:json)?\n?|\n?```", re.IGNORECASE)
_NUMBER_PATTERN = re.compile(r"-?\d+(?:[.,]\d+)?")


class VisionServiceError(RuntimeError):
  """Raised when the vision model cannot be reached or rejects the request."""


class VisionRateLimited(VisionServiceError):
  """Raised when the vision model reports that its quota is exhausted."""


class MalformedAnalysisError(VisionServiceError):
  """Raised when the model's answer is not the expected JSON object."""


class NotAMealError(ValueError):
  """Raised when the model reports that the photo does not show a meal."""


@dataclass
class MealAnalysis:
  title: str = ""
  details: str = ""
  ingredients: List[str] = field(default_factory=list)
  recipe: str = ""
  shopping_list: str = ""
  health_score: Optional[int] = None
  is_food: bool = True

  def to_dict(self) -> Dict[str, Any]:
    data = asdict(self)
    return {
      "isFood": data["is_food"],
      "title": data["title"],
      "details": data["details"],
      "ingredients": data["ingredients"],
      "recipe": data["recipe"],
      "shoppingList": data["shopping_list"],
      "healthScore": data["health_score"],
    }


def strip_code_fence(text: str) -> str:
  """Remove ```json fences the model sometimes wraps around its answer."""
  return _FENCE_PATTERN.sub("", text or "").strip()


def _coerce_health_score(value: Any) -> Optional[int]:
  if value is None or isinstance(value, bool):
    return None
  if isinstance(value, (int, float)):
    number = float(value)
  else:
    match = _NUMBER_PATTERN.search(str(value))
    if not match:
      return None
    number = float(match.group(0).replace(",", "."))
  if not math.isfinite(number):
    return None
  return int(min(10, max(1, round(number))))


def _coerce_text(value: Any) -> str:
  if value is None:
    return ""
  if isinstance(value, list):
    return "\n".join(str(item) for item in value if item is not None)
  if isinstance(value, dict):
    return "\n".join(f"{key}: {_coerce_text(val)}" for key, val in value.items())
  return str(value).strip()


def _coerce_ingredients(value: Any) -> List[str]:
  if value is None:
    return []
  if isinstance(value, str):
    return [line.strip() for line in value.splitlines() if line.strip()]
  if isinstance(value, list):
    items: List[str] = []
    for item in value:
      if isinstance(item, dict):
        label = item.get("name") or item.get("ingredient") or item.get("item")
        if label:
          items.append(str(label).strip())
      elif item is not None and str(item).strip():
        items.append(str(item).strip())
    return items
  return [str(value)]


def parse_analysis(text: str) -> MealAnalysis:
  """Parse the model's free-text answer into a :class:`MealAnalysis`."""
  cleaned = strip_code_fence(text)
  if not cleaned:
    raise MalformedAnalysisError("Empty response from the vision model.")
  try:
    payload = json.loads(cleaned)
  except ValueError as exc:
    raise MalformedAnalysisError("Vision model response was not JSON.") from exc
  if not isinstance(payload, dict):
    raise MalformedAnalysisError("Vision model response was not a JSON object.")

  if payload.get("isFood") is False:
    raise NotAMealError("The photo does not appear to show a meal.")

  return MealAnalysis(
    title=_coerce_text(payload.get("title")),
    details=_coerce_text(payload.get("details") or payload.get("description")),
    ingredients=_coerce_ingredients(payload.get("ingredients")),
    recipe=_coerce_text(payload.get("recipe")),
    shopping_list=_coerce_text(payload.get("shoppingList")),
    health_score=_coerce_health_score(payload.get("healthScore")),
  )


def _response_text(payload: Dict[str, Any]) -> str:
  """Concatenate the text parts of the first candidate."""
  candidates = payload.get("candidates") or []
  if not candidates:
    feedback = payload.get("promptFeedback") or {}
    reason = feedback.get("blockReason")
    if reason:
      raise VisionServiceError(f"Vision model blocked the request: {reason}")
    return ""
  parts = (candidates[0].get("content") or {}).get("parts") or []
  return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class VisionClient:
  def __init__(
    self,
    api_key: str,
    *,
    model: str,
    timeout: int = 60,
    session: Optional[requests.Session] = None,
  ) -> None:
    self.api_key = api_key
    self.model = model
    self.timeout = timeout
    self._session = session or requests.Session()

  def analyze(self, image_base64: str, mime_type: str) -> MealAnalysis:
    """
    Send the image and extraction prompt to the model and parse its answer.

    Parameters
    ----------
    image_base64:
        Base64-encoded image bytes without a ``data:`` prefix.
    mime_type:
        MIME type of the encoded image, e.g. ``image/jpeg``.
    """
    if not self.api_key:
      raise VisionServiceError("GEMINI_API_KEY is not set")

    body = {
      "contents": [
        {
          "parts": [
            {"text": ANALYSIS_PROMPT},
            {"inline_data": {"mime_type": mime_type, "data": image_base64}},
          ]
        }
      ],
      "generationConfig": {"responseMimeType": "application/json"},
    }
    url = GEMINI_ENDPOINT.format(model=self.model)
    headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    try:
      response = self._session.post(url, headers=headers, json=body, timeout=self.timeout)
    except requests.RequestException as exc:
      raise VisionServiceError(f"Vision request failed: {exc}") from exc

    if response.status_code == 429:
      raise VisionRateLimited("AI limit reached. Please try again in a minute.")
    if not response.ok:
      error_body = response.text[:200] if response.text else response.reason
      if "API key" in (error_body or ""):
        raise VisionServiceError("Invalid API key. Check your settings.")
      raise VisionServiceError(f"Vision model returned {response.status_code}: {error_body}")

    try:
      payload = response.json()
    except ValueError as exc:
      raise MalformedAnalysisError("Vision model envelope was not JSON.") from exc

    text = _response_text(payload)
    logger.debug("Vision model answered with %d characters", len(text))
    return parse_analysis(text)


__all__ = [
  "ANALYSIS_PROMPT",
  "MealAnalysis",
  "MalformedAnalysisError",
  "NotAMealError",
  "VisionClient",
  "VisionRateLimited",
  "VisionServiceError",
  "parse_analysis",
  "strip_code_fence",
]
