# Live dashboard channels: charts, counters and tables

from .channels import ChannelSyncClient
from .models import ChannelKind, ChartPoint, ChartState, CounterState, TableRow, TableState, Trend

__all__ = [
    'ChannelSyncClient',
    'ChannelKind',
    'ChartPoint',
    'ChartState',
    'CounterState',
    'TableRow',
    'TableState',
    'Trend'
]
