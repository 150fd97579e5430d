from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Optional

from utils import parse_date


class Priority(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'

    @classmethod
    def parse(cls, value):
        if value is None or value == '':
            return cls.MEDIUM
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


@dataclass
class Profile:
    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    # 累计经验值, 只通过 add_xp 远程过程增长
    total_xp: int = 0

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row['id'],
            username=row.get('username'),
            email=row.get('email'),
            total_xp=int(row.get('total_xp') or 0),
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class Task:
    id: str
    title: str
    user_id: Optional[str] = None
    completed: bool = False
    priority: Priority = Priority.MEDIUM
    # None means "today" in the focus and today views
    due_date: Optional[date] = None
    # 计划时长 (分钟)
    duration_min: int = 25
    # 实际专注时长 (分钟)
    spent_min: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row):
        created_at = row.get('created_at')
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace('Z', '+00:00'))
        duration = row.get('duration_min')
        return cls(
            id=str(row['id']),
            title=row['title'],
            user_id=row.get('user_id'),
            completed=bool(row.get('completed', False)),
            priority=Priority.parse(row.get('priority')),
            due_date=parse_date(row.get('due_date')),
            duration_min=int(duration) if duration else 25,
            spent_min=int(row.get('spent_min') or 0),
            created_at=created_at,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'completed': self.completed,
            'priority': self.priority.value,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'duration_min': self.duration_min,
            'spent_min': self.spent_min,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class FocusSession:
    user_id: str
    # 计划的专注时长 (分钟)
    minutes: int
    xp_earned: int
    id: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row):
        return cls(
            user_id=row.get('user_id'),
            minutes=int(row.get('minutes') or 0),
            xp_earned=int(row.get('xp_earned') or 0),
            id=row.get('id'),
        )
