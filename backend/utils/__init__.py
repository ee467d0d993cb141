"""工具模块"""
from .logger import setup_logger, get_alert_logger, TaskLogger, StageLogger
from .storage import StorageManager

__all__ = ['setup_logger', 'get_alert_logger', 'TaskLogger', 'StageLogger', 'StorageManager']
