"""Small string key/value stores used for auth bookkeeping."""

from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional, Protocol


class KeyValueStore(Protocol):
  def get(self, key: str) -> Optional[str]: ...

  def set(self, key: str, value: str) -> None: ...

  def remove(self, key: str) -> None: ...


class MemoryStore:
  """Dict-backed store; created by its owner and discarded with it."""

  def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
    self._data: Dict[str, str] = dict(initial or {})

  def get(self, key: str) -> Optional[str]:
    return self._data.get(key)

  def set(self, key: str, value: str) -> None:
    self._data[key] = value

  def remove(self, key: str) -> None:
    self._data.pop(key, None)

  def clear(self) -> None:
    self._data.clear()

  def __contains__(self, key: object) -> bool:
    return key in self._data

  def __iter__(self) -> Iterator[str]:
    return iter(list(self._data))

  def __len__(self) -> int:
    return len(self._data)


__all__ = ["KeyValueStore", "MemoryStore"]
