"""
EduBot — Data Models.

Tasks and reminders persist in the database across restarts. A reminder row
is the durable form of a scheduled job: its id doubles as the job id, and its
`delivered` flag is the source of truth that keeps a restart from sending the
same notification twice.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

TITLE_MAX_LENGTH = 200


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Category(str, Enum):
    WORK = "work"
    STUDY = "study"
    PERSONAL = "personal"
    SHOPPING = "shopping"
    REMINDER = "reminder"
    GENERAL = "general"


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class RecurrenceRule:
    """How a task repeats: every `interval` days/weeks/months, optionally until a cutoff."""

    frequency: Frequency
    interval: int = 1
    until: datetime | None = None

    def __post_init__(self) -> None:
        if self.interval < 1:
            raise ValueError(f"Recurrence interval must be positive, got {self.interval}")

    def to_json(self) -> str:
        return json.dumps({
            "frequency": self.frequency.value,
            "interval": self.interval,
            "until": self.until.isoformat() if self.until else None,
        })

    @classmethod
    def from_json(cls, raw: str) -> RecurrenceRule:
        data = json.loads(raw)
        until = data.get("until")
        return cls(
            frequency=Frequency(data["frequency"]),
            interval=int(data.get("interval", 1)),
            until=datetime.fromisoformat(until) if until else None,
        )


@dataclass
class Task:
    """A personal task created through the smart-task parser."""

    id: int
    owner: int
    title: str
    created_at: datetime
    description: str = ""
    priority: Priority = Priority.MEDIUM
    category: Category = Category.GENERAL
    due_at: datetime | None = None
    tags: set[str] = field(default_factory=set)
    recurrence: RecurrenceRule | None = None
    series_start: datetime | None = None  # anchor of a recurring series
    status: TaskStatus = TaskStatus.PENDING
    completed_at: datetime | None = None


@dataclass
class Reminder:
    """A persisted one-shot notification."""

    id: int
    target: str                  # opaque chat/user reference for the notifier
    fire_at: datetime
    message: str
    created_at: datetime
    delivered: bool = False
    cancelled: bool = False
    task_id: int | None = None   # set when the reminder belongs to a task
    delivered_at: datetime | None = None

    @property
    def job_id(self) -> str:
        return str(self.id)


@dataclass
class TaskStats:
    """Per-user task counters, as shown by /stats."""

    total: int = 0
    completed: int = 0
    pending: int = 0
    overdue: int = 0
    cancelled: int = 0
    by_priority: dict[str, int] = field(default_factory=dict)
    by_category: dict[str, int] = field(default_factory=dict)

    @property
    def completion_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total * 100, 1)
