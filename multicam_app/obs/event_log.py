"""
Structured event log passed through the pipeline as its observability sink.

Every stage appends immutable events instead of writing to global state.
Each event is also mirrored to the ``multicam_app`` logger as a tagged line,
e.g. ``[calib] camera 0: 14 valid frames``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

LOGGER_NAME = "multicam_app"


class Event:
    """Immutable event."""

    __slots__ = ("event_type", "data", "timestamp", "message")

    def __init__(
        self,
        event_type: str,
        data: Dict[str, Any],
        timestamp: Optional[float] = None,
        message: str = "",
    ):
        """
        Create event.

        Args:
            event_type: Dotted event type, e.g. 'calib.frame_skipped'. The
                part before the first dot is the stage tag.
            data: JSON-serializable event payload.
            timestamp: Unix timestamp (auto-generated if None).
            message: Optional human-readable summary.
        """
        object.__setattr__(self, "event_type", event_type)
        object.__setattr__(self, "data", dict(data))
        object.__setattr__(
            self,
            "timestamp",
            timestamp if timestamp is not None else datetime.now().timestamp(),
        )
        object.__setattr__(self, "message", message)

    def __setattr__(self, name, value):
        raise AttributeError("Event is immutable")

    @property
    def stage(self) -> str:
        return self.event_type.split(".", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "message": self.message,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_json_default)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Event":
        return Event(d["event_type"], d["data"], d["timestamp"], d.get("message", ""))

    @staticmethod
    def from_json(s: str) -> "Event":
        return Event.from_dict(json.loads(s))


def _json_default(value: Any) -> Any:
    # numpy scalars / arrays end up in payloads regularly
    if hasattr(value, "tolist"):
        return value.tolist()
    return str(value)


class EventLog:
    """
    Append-only event log.

    Args:
        log_file: Optional JSON-lines file the events are appended to.
        logger: Logger that receives a one-line rendering of every event.
    """

    def __init__(
        self,
        log_file: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.events: List[Event] = []
        self.log_file = Path(log_file) if log_file is not None else None
        self.logger = logger if logger is not None else logging.getLogger(LOGGER_NAME)

        if self.log_file is not None:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def append(self, event: Event, level: int = logging.INFO) -> Event:
        self.events.append(event)

        if self.log_file is not None:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")

        text = event.message or event.event_type.split(".", 1)[-1]
        if event.data and not event.message:
            text = f"{text}: {json.dumps(event.data, default=_json_default)}"
        self.logger.log(level, "[%s] %s", event.stage, text)
        return event

    def append_event(
        self,
        event_type: str,
        message: str = "",
        level: int = logging.INFO,
        **data: Any,
    ) -> Event:
        """Convenience method to create and append an event."""
        return self.append(Event(event_type, data, message=message), level=level)

    def debug(self, event_type: str, message: str = "", **data: Any) -> Event:
        return self.append_event(event_type, message, logging.DEBUG, **data)

    def info(self, event_type: str, message: str = "", **data: Any) -> Event:
        return self.append_event(event_type, message, logging.INFO, **data)

    def warning(self, event_type: str, message: str = "", **data: Any) -> Event:
        return self.append_event(event_type, message, logging.WARNING, **data)

    def error(self, event_type: str, message: str = "", **data: Any) -> Event:
        return self.append_event(event_type, message, logging.ERROR, **data)

    def get_events(self, event_type: Optional[str] = None) -> List[Event]:
        """
        Query events.

        Args:
            event_type: Exact event type, or a stage prefix ending with '.'
                (e.g. 'calib.') to select a whole stage.
        """
        if event_type is None:
            return list(self.events)
        if event_type.endswith("."):
            return [e for e in self.events if e.event_type.startswith(event_type)]
        return [e for e in self.events if e.event_type == event_type]

    @staticmethod
    def load(log_file: Path) -> List[Event]:
        """Read back events persisted by an EventLog."""
        events = []
        with open(log_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    events.append(Event.from_json(line))
        return events


def ensure_sink(sink: Optional[EventLog]) -> EventLog:
    """Return `sink`, or a fresh in-memory EventLog when None."""
    return sink if sink is not None else EventLog()


__all__ = ["Event", "EventLog", "ensure_sink", "LOGGER_NAME"]
