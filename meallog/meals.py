"""
Meal records: input cleaning, the monthly upload allowance and the shared
feed's search, filter and sort rules.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from meallog.auth.identity import Identity
from meallog.storage import StorageError

logger = logging.getLogger(__name__)

FIELD_LIMITS = {
  "title": 100,
  "description": 500,
  "ingredients": 1000,
  "recipe": 2000,
  "shopping_list": 2000,
}

FILTER_MODES = ("all", "mine", "others")
SORT_FIELDS = ("date", "user", "score")
SORT_DIRECTIONS = ("asc", "desc")

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class MealValidationError(ValueError):
  """Raised when submitted meal fields are missing or invalid."""


class QuotaExceeded(RuntimeError):
  """Raised when a user has stored the maximum number of meals this month."""

  def __init__(self, limit: int) -> None:
    super().__init__(f"Storage limit reached: at most {limit} meals per month.")
    self.limit = limit


@dataclass
class MealRecord:
  id: str
  user_id: str
  user_name: str
  user_email: str
  image_url: str
  title: str
  description: str = ""
  ingredients: str = ""
  recipe: str = ""
  shopping_list: str = ""
  health_score: Optional[int] = None
  date: str = ""
  created_at: str = ""

  @classmethod
  def from_mapping(cls, data: Mapping[str, Any]) -> "MealRecord":
    return cls(
      id=str(data.get("id") or ""),
      user_id=str(data.get("user_id") or ""),
      user_name=data.get("user_name") or "",
      user_email=data.get("user_email") or "",
      image_url=data.get("image_url") or "",
      title=data.get("title") or "",
      description=data.get("description") or "",
      ingredients=data.get("ingredients") or "",
      recipe=data.get("recipe") or "",
      shopping_list=data.get("shopping_list") or "",
      health_score=_parse_health_score(data.get("health_score")),
      date=data.get("date") or "",
      created_at=data.get("created_at") or "",
    )

  def to_dict(self) -> Dict[str, Any]:
    return asdict(self)


def _parse_health_score(value: Any) -> Optional[int]:
  if value is None or value == "":
    return None
  try:
    score = int(float(value))
  except (TypeError, ValueError) as exc:
    raise MealValidationError("Health score must be a number between 1 and 10.") from exc
  if not 1 <= score <= 10:
    raise MealValidationError("Health score must be a number between 1 and 10.")
  return score


def _clean(value: Any, limit: int) -> str:
  if value is None:
    return ""
  if isinstance(value, list):
    value = "\n".join(str(item) for item in value)
  return str(value).strip()[:limit]


def sanitize_meal_fields(form: Mapping[str, Any], *, today: Optional[str] = None) -> Dict[str, Any]:
  """Trim, truncate and validate the user-editable meal fields."""
  fields = {name: _clean(form.get(name), limit) for name, limit in FIELD_LIMITS.items()}
  if not fields["shopping_list"]:
    fields["shopping_list"] = _clean(form.get("shoppingList"), FIELD_LIMITS["shopping_list"])
  if not fields["title"]:
    raise MealValidationError("Title is required.")

  raw_score = form.get("health_score", form.get("healthScore"))
  fields["health_score"] = _parse_health_score(raw_score)

  date = (form.get("date") or "").strip()
  if not date:
    date = today or datetime.now(timezone.utc).date().isoformat()
  elif not _DATE_PATTERN.match(date):
    raise MealValidationError("Date must use the YYYY-MM-DD format.")
  else:
    try:
      datetime.strptime(date, "%Y-%m-%d")
    except ValueError as exc:
      raise MealValidationError("Date must use the YYYY-MM-DD format.") from exc
  fields["date"] = date
  return fields


def new_meal_record(
  identity: Identity,
  image_url: str,
  fields: Mapping[str, Any],
  *,
  now: Optional[datetime] = None,
) -> MealRecord:
  """Build a record stamped with ``now`` (UTC wall time when omitted)."""
  return MealRecord(
    id=uuid.uuid4().hex,
    user_id=identity.uid,
    user_name=identity.short_name,
    user_email=identity.email or "",
    image_url=image_url,
    created_at=(now or datetime.now(timezone.utc)).isoformat(),
    **fields,
  )


def start_of_month(now: datetime) -> datetime:
  return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class UploadQuota:
  """Monthly cap on stored meals per user.

  A failed count never blocks an upload: the check logs the failure and
  lets the request through.
  """

  def __init__(self, store, *, limit: int, clock: Callable[[], float] = time.time) -> None:
    self._store = store
    self.limit = limit
    self._clock = clock

  def used(self, user_id: str) -> int:
    now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
    return self._store.count_meals_since(user_id, start_of_month(now).isoformat())

  def check(self, user_id: str) -> None:
    try:
      used = self.used(user_id)
    except StorageError as exc:
      logger.warning("Could not check monthly uploads for %s; allowing upload: %s", user_id, exc)
      return
    if used >= self.limit:
      logger.info("User %s reached the monthly limit of %d meals", user_id, self.limit)
      raise QuotaExceeded(self.limit)


def filter_meals(
  meals: List[MealRecord],
  *,
  mode: str = "all",
  user_id: Optional[str] = None,
  query: str = "",
) -> List[MealRecord]:
  needle = (query or "").strip().lower()
  result = []
  for meal in meals:
    if mode == "mine" and user_id and meal.user_id != user_id:
      continue
    if mode == "others" and user_id and meal.user_id == user_id:
      continue
    if needle and needle not in meal.title.lower() and needle not in (meal.description or "").lower():
      continue
    result.append(meal)
  return result


def _sort_key(field: str) -> Callable[[MealRecord], Any]:
  if field == "user":
    return lambda meal: meal.user_email.split("@")[0].lower()
  if field == "score":
    return lambda meal: meal.health_score or 0
  return lambda meal: meal.date


def sort_meals(meals: List[MealRecord], *, field: str = "date", direction: str = "desc") -> List[MealRecord]:
  if field not in SORT_FIELDS:
    raise MealValidationError(f"Unknown sort field: {field}")
  if direction not in SORT_DIRECTIONS:
    raise MealValidationError(f"Unknown sort direction: {direction}")
  return sorted(meals, key=_sort_key(field), reverse=direction == "desc")


__all__ = [
  "FIELD_LIMITS",
  "FILTER_MODES",
  "MealRecord",
  "MealValidationError",
  "QuotaExceeded",
  "UploadQuota",
  "filter_meals",
  "new_meal_record",
  "sanitize_meal_fields",
  "sort_meals",
  "start_of_month",
]
