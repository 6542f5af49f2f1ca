"""
Typed read-through caches for live dashboard channels.
"""
import bisect
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from enum import Enum

from ..core.clock import parse_timestamp, utc_now


class ChannelKind(Enum):
    CHART = "chart"
    COUNTER = "counter"
    TABLE = "table"


class Trend(Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    NEUTRAL = "neutral"


@dataclass
class ChartPoint:
    """One sample of a live chart."""
    timestamp: datetime
    value: float
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'value': self.value,
            'label': self.label
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChartPoint':
        return cls(
            timestamp=parse_timestamp(data.get('timestamp'), default=utc_now()),
            value=float(data['value']),
            label=data.get('label')
        )


@dataclass
class ChartState:
    """Ordered points of a chart channel, bounded by age and count."""
    name: str
    points: List[ChartPoint] = field(default_factory=list)
    chart_type: str = "line"
    color: Optional[str] = None

    def append(self, points: List[ChartPoint], retention: timedelta, max_points: int):
        keys = [p.timestamp for p in self.points]
        for point in points:
            index = bisect.bisect_right(keys, point.timestamp)
            keys.insert(index, point.timestamp)
            self.points.insert(index, point)
        self.trim(retention, max_points)

    def trim(self, retention: timedelta, max_points: int):
        if self.points:
            horizon = self.points[-1].timestamp - retention
            self.points = [p for p in self.points if p.timestamp >= horizon]
        if max_points and len(self.points) > max_points:
            self.points = self.points[-max_points:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': self.chart_type,
            'color': self.color,
            'points': [p.to_dict() for p in self.points]
        }


@dataclass
class CounterState:
    """Current and prior value of a counter channel."""
    name: str
    value: float = 0
    previous_value: Optional[float] = None
    label: Optional[str] = None
    format: str = "number"

    def set(self, value: float):
        self.previous_value = self.value
        self.value = value

    @property
    def change(self) -> float:
        if self.previous_value is None:
            return 0
        return self.value - self.previous_value

    @property
    def trend(self) -> Trend:
        if self.previous_value is None or self.value == self.previous_value:
            return Trend.NEUTRAL
        return Trend.INCREASE if self.value > self.previous_value else Trend.DECREASE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'label': self.label or self.name,
            'value': self.value,
            'previous_value': self.previous_value,
            'change': self.change,
            'trend': self.trend.value,
            'format': self.format
        }


@dataclass
class TableRow:
    id: str
    data: Dict[str, Any]
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'data': self.data, 'updated_at': self.updated_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableRow':
        return cls(
            id=str(data['id']),
            data=dict(data.get('data') or {}),
            updated_at=parse_timestamp(data.get('timestamp'), default=utc_now())
        )


@dataclass
class TableState:
    """Rows of a table channel in insertion order, unique by row id."""
    name: str
    columns: List[Dict[str, Any]] = field(default_factory=list)
    rows: List[TableRow] = field(default_factory=list)

    def upsert(self, row: TableRow):
        for index, existing in enumerate(self.rows):
            if existing.id == row.id:
                self.rows[index] = row
                return
        self.rows.append(row)

    def remove(self, row_id: str) -> bool:
        before = len(self.rows)
        self.rows = [r for r in self.rows if r.id != row_id]
        return len(self.rows) != before

    def trim(self, max_rows: int):
        if max_rows and len(self.rows) > max_rows:
            self.rows = self.rows[-max_rows:]

    def get(self, row_id: str) -> Optional[TableRow]:
        return next((r for r in self.rows if r.id == row_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'columns': self.columns,
            'rows': [r.to_dict() for r in self.rows]
        }
