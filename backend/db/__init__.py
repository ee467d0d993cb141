"""
数据库模块
"""
from .database import init_db, get_db, get_connection
from .models import Project, QueueItem, QueueStats, HistoryRecord
from .progress import SqliteProgressReporter
from . import crud

__all__ = [
    "init_db",
    "get_db",
    "get_connection",
    "Project",
    "QueueItem",
    "QueueStats",
    "HistoryRecord",
    "SqliteProgressReporter",
    "crud",
]
