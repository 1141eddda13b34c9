"""In-memory ring buffer of recent log records, for the debug console."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List


class LogBuffer(logging.Handler):
  def __init__(self, capacity: int = 100, level: int = logging.INFO) -> None:
    super().__init__(level=level)
    self.capacity = capacity
    self._entries: Deque[Dict[str, str]] = deque(maxlen=capacity)
    self.setFormatter(logging.Formatter("%(name)s: %(message)s"))

  def emit(self, record: logging.LogRecord) -> None:
    try:
      message = self.format(record)
    except Exception:
      self.handleError(record)
      return
    self._entries.append(
      {
        "type": record.levelname.lower(),
        "message": message,
        "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
      }
    )

  def entries(self) -> List[Dict[str, str]]:
    return list(self._entries)

  def clear(self) -> None:
    self._entries.clear()

  def attach(self, *loggers: logging.Logger) -> None:
    for target in loggers:
      if self not in target.handlers:
        target.addHandler(self)
      if target.level == logging.NOTSET or target.level > self.level:
        target.setLevel(self.level)

  def detach(self, *loggers: logging.Logger) -> None:
    for target in loggers:
      target.removeHandler(self)


__all__ = ["LogBuffer"]
