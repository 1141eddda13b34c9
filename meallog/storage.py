"""
Persistence backends for meal records, whitelist collections and photos.

Two interchangeable backends are provided: SQLite plus the local filesystem
for development, and DynamoDB plus S3 for production. Both expose the same
methods so the rest of the service does not care which one is active.
"""

from __future__ import annotations

import io
import logging
import re
import sqlite3
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

logger = logging.getLogger(__name__)

MEAL_COLUMNS = (
  "id",
  "user_id",
  "user_name",
  "user_email",
  "image_url",
  "title",
  "description",
  "ingredients",
  "recipe",
  "shopping_list",
  "health_score",
  "date",
  "created_at",
)

_COLLECTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StorageError(RuntimeError):
  """Raised when the active storage backend cannot complete an operation."""


def _to_dynamo_compatible(value: Any) -> Any:
  """Convert native Python types into structures acceptable by DynamoDB."""
  if isinstance(value, float):
    return Decimal(str(value))
  if isinstance(value, Decimal):
    return value
  if isinstance(value, dict):
    return {
      str(key): _to_dynamo_compatible(val)
      for key, val in value.items()
      if val is not None
    }
  if isinstance(value, list):
    return [_to_dynamo_compatible(item) for item in value if item is not None]
  return value


def _from_dynamo(value: Any) -> Any:
  """Recursively convert DynamoDB Decimals into JSON friendly primitives."""
  if isinstance(value, Decimal):
    if value % 1 == 0:
      return int(value)
    return float(value)
  if isinstance(value, dict):
    return {key: _from_dynamo(val) for key, val in value.items()}
  if isinstance(value, list):
    return [_from_dynamo(item) for item in value]
  return value


def _check_collection(name: str) -> str:
  if not _COLLECTION_NAME.match(name or ""):
    raise StorageError(f"Invalid collection name: {name!r}")
  return name


class SqliteStore:
  """Meals and whitelist collections in a single SQLite file."""

  def __init__(self, db_path: Path, whitelist_collections: Iterable[str]) -> None:
    self.db_path = Path(db_path)
    self.whitelist_collections = tuple(_check_collection(name) for name in whitelist_collections)

  def _connect(self) -> sqlite3.Connection:
    """Return a SQLite connection with row access by name."""
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(self.db_path)
    conn.row_factory = sqlite3.Row
    return conn

  def initialise(self) -> None:
    """Ensure the meal and whitelist tables exist."""
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          """
          CREATE TABLE IF NOT EXISTS meals (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            user_name TEXT,
            user_email TEXT,
            image_url TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            ingredients TEXT,
            recipe TEXT,
            shopping_list TEXT,
            health_score INTEGER,
            date TEXT NOT NULL,
            created_at TEXT NOT NULL
          )
          """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_meals_user_created ON meals (user_id, created_at)")
        for collection in self.whitelist_collections:
          conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {collection} (
              id TEXT PRIMARY KEY,
              email TEXT
            )
            """
          )
    finally:
      conn.close()

  def insert_meal(self, record: Mapping[str, Any]) -> None:
    placeholders = ", ".join("?" for _ in MEAL_COLUMNS)
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          f"INSERT INTO meals ({', '.join(MEAL_COLUMNS)}) VALUES ({placeholders})",
          tuple(record.get(column) for column in MEAL_COLUMNS),
        )
    except sqlite3.DatabaseError as exc:
      raise StorageError(f"Failed to persist meal: {exc}") from exc
    finally:
      conn.close()

  def list_meals(self) -> List[Dict[str, Any]]:
    """Return every meal, newest first."""
    conn = self._connect()
    try:
      rows = conn.execute(
        f"SELECT {', '.join(MEAL_COLUMNS)} FROM meals ORDER BY created_at DESC"
      ).fetchall()
    except sqlite3.DatabaseError as exc:
      raise StorageError(f"Failed to read meals: {exc}") from exc
    finally:
      conn.close()
    return [dict(row) for row in rows]

  def count_meals_since(self, user_id: str, since_iso: str) -> int:
    conn = self._connect()
    try:
      row = conn.execute(
        "SELECT COUNT(*) AS total FROM meals WHERE user_id = ? AND created_at >= ?",
        (user_id, since_iso),
      ).fetchone()
    except sqlite3.DatabaseError as exc:
      raise StorageError(f"Failed to count meals: {exc}") from exc
    finally:
      conn.close()
    return int(row["total"]) if row else 0

  def find_by_email(self, collection: str, email: str) -> bool:
    table = _check_collection(collection)
    conn = self._connect()
    try:
      row = conn.execute(
        f"SELECT 1 FROM {table} WHERE lower(email) = lower(?) LIMIT 1",
        (email,),
      ).fetchone()
    finally:
      conn.close()
    return row is not None

  def get_by_key(self, collection: str, key: str) -> bool:
    table = _check_collection(collection)
    conn = self._connect()
    try:
      row = conn.execute(f"SELECT 1 FROM {table} WHERE lower(id) = lower(?) LIMIT 1", (key,)).fetchone()
    finally:
      conn.close()
    return row is not None

  def add_whitelist_entry(self, collection: str, *, email: Optional[str] = None, key: Optional[str] = None) -> str:
    """Insert a whitelist record keyed by ``key`` (random when omitted).

    Keys and emails are stored lower-cased so lookups match whatever case the
    address was typed in.
    """
    table = _check_collection(collection)
    record_id = key.strip().lower() if key else uuid.uuid4().hex
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          f"INSERT OR REPLACE INTO {table} (id, email) VALUES (?, ?)",
          (record_id, email.lower() if email else None),
        )
    finally:
      conn.close()
    return record_id


class DynamoStore:
  """Meals table plus one DynamoDB table per whitelist collection."""

  def __init__(self, meals_table: Any, whitelist_tables: Mapping[str, Any]) -> None:
    self._meals = meals_table
    self._whitelist = dict(whitelist_tables)

  @classmethod
  def from_names(
    cls,
    meals_table_name: str,
    whitelist_table_names: Mapping[str, str],
    *,
    region: Optional[str] = None,
  ) -> "DynamoStore":
    """Return a store bound to tables in the configured region."""
    resource_kwargs: Dict[str, Any] = {}
    if region:
      resource_kwargs["region_name"] = region
    dynamo = boto3.resource("dynamodb", **resource_kwargs)
    return cls(
      dynamo.Table(meals_table_name),
      {collection: dynamo.Table(name) for collection, name in whitelist_table_names.items()},
    )

  def initialise(self) -> None:
    """Tables are provisioned outside the application."""

  def _table(self, collection: str) -> Any:
    table = self._whitelist.get(collection)
    if table is None:
      raise StorageError(f"No DynamoDB table configured for collection {collection!r}")
    return table

  def _scan_all(self, table: Any, **kwargs: Any) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    response = table.scan(**kwargs)
    items.extend(response.get("Items", []))
    while "LastEvaluatedKey" in response:
      response = table.scan(ExclusiveStartKey=response["LastEvaluatedKey"], **kwargs)
      items.extend(response.get("Items", []))
    return items

  def insert_meal(self, record: Mapping[str, Any]) -> None:
    try:
      self._meals.put_item(Item=_to_dynamo_compatible(dict(record)))
    except (BotoCoreError, ClientError) as exc:
      raise StorageError(f"Failed to persist meal: {exc}") from exc

  def list_meals(self) -> List[Dict[str, Any]]:
    try:
      items = self._scan_all(self._meals)
    except (BotoCoreError, ClientError) as exc:
      raise StorageError(f"Failed to read meals: {exc}") from exc
    meals = []
    for item in items:
      meal = {column: None for column in MEAL_COLUMNS}
      meal.update(_from_dynamo(item))
      meals.append(meal)
    meals.sort(key=lambda meal: meal.get("created_at") or "", reverse=True)
    return meals

  def count_meals_since(self, user_id: str, since_iso: str) -> int:
    condition = Attr("user_id").eq(user_id) & Attr("created_at").gte(since_iso)
    total = 0
    try:
      response = self._meals.scan(FilterExpression=condition, Select="COUNT")
      total += int(response.get("Count", 0))
      while "LastEvaluatedKey" in response:
        response = self._meals.scan(
          FilterExpression=condition,
          Select="COUNT",
          ExclusiveStartKey=response["LastEvaluatedKey"],
        )
        total += int(response.get("Count", 0))
    except (BotoCoreError, ClientError) as exc:
      raise StorageError(f"Failed to count meals: {exc}") from exc
    return total

  def find_by_email(self, collection: str, email: str) -> bool:
    # Attr().eq is case-sensitive, so compare on this side.
    wanted = email.strip().lower()
    items = self._scan_all(self._table(collection), ProjectionExpression="id, email")
    return any(str(item.get("email") or "").strip().lower() == wanted for item in items)

  def get_by_key(self, collection: str, key: str) -> bool:
    table = self._table(collection)
    for candidate in dict.fromkeys((key, key.strip().lower())):
      if "Item" in table.get_item(Key={"id": candidate}):
        return True
    # Records written outside the app may carry a mixed-case id.
    wanted = key.strip().lower()
    items = self._scan_all(table, ProjectionExpression="id")
    return any(str(item.get("id") or "").lower() == wanted for item in items)


class LocalImageStore:
  """Writes photos under ``uploads_dir``; they are served by the app itself."""

  def __init__(self, uploads_dir: Path) -> None:
    self.uploads_dir = Path(uploads_dir)

  def save(self, data: bytes, filename: str, content_type: str, *, base_url: str) -> str:
    target = self.uploads_dir / filename
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "wb") as destination:
      destination.write(data)
    return f"{base_url.rstrip('/')}/uploads/{filename}"


class S3ImageStore:
  def __init__(self, bucket: str, *, client: Any = None, region: Optional[str] = None, acl: str = "") -> None:
    self.bucket = bucket
    self.acl = acl
    if client is None:
      client_kwargs: Dict[str, Any] = {}
      if region:
        client_kwargs["region_name"] = region
      client = boto3.client("s3", **client_kwargs)
    self._client = client

  def save(self, data: bytes, filename: str, content_type: str, *, base_url: str = "") -> str:
    """Upload the bytes to S3 and return the public URL."""
    extra_args = {"ContentType": content_type}
    if self.acl:
      extra_args["ACL"] = self.acl
    try:
      self._client.upload_fileobj(io.BytesIO(data), self.bucket, filename, ExtraArgs=extra_args)
    except (BotoCoreError, NoCredentialsError, ClientError) as exc:
      raise StorageError(f"Cloud upload failed: {exc}") from exc
    return f"https://{self.bucket}.s3.amazonaws.com/{filename}"


__all__ = [
  "DynamoStore",
  "LocalImageStore",
  "MEAL_COLUMNS",
  "S3ImageStore",
  "SqliteStore",
  "StorageError",
]
