#!/usr/bin/env python3
"""日志工具模块"""

import json
import logging
from datetime import datetime
from pathlib import Path

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# 运维告警通道：API Key 缺失、401/403 等配置问题
ALERT_LOGGER_NAME = "kie.alerts"


def setup_logger(name: str, log_file: Path, level=logging.INFO) -> logging.Logger:
    """设置日志记录器（文件 + 控制台）"""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    console_handler = logging.StreamHandler()

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    return logger


def get_alert_logger() -> logging.Logger:
    """获取运维告警日志记录器"""
    return logging.getLogger(ALERT_LOGGER_NAME)


class TaskLogger:
    """队列项专属日志记录器，每个队列项一个日志文件"""

    def __init__(self, task_id: str, logs_dir: Path, title: str = ""):
        self.task_id = task_id
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger("queue")

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.logs_dir / f"queue_{task_id}_{timestamp}.log"
        self.file = open(self.log_file, 'w', encoding='utf-8')

        self.file.write("=" * 80 + "\n")
        self.file.write(f"队列项ID: {task_id}\n")
        if title:
            self.file.write(f"文件: {title}\n")
        self.file.write(f"开始时间: {datetime.now().isoformat()}\n")
        self.file.write("=" * 80 + "\n\n")
        self.file.flush()

    def log(self, message: str, level: str = "INFO"):
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self.file.write(f"[{timestamp}] [{level}] {message}\n")
        self.file.flush()
        self._logger.log(logging.getLevelName(level), f"[Queue:{self.task_id}] {message}")

    def log_dict(self, data: dict, title: str = "Data"):
        self.log(f"--- {title} ---")
        self.file.write(json.dumps(data, ensure_ascii=False, indent=2, default=str) + "\n")
        self.file.write("--- End ---\n\n")
        self.file.flush()

    def close(self):
        if self.file.closed:
            return
        self.file.write("\n" + "=" * 80 + "\n")
        self.file.write(f"结束时间: {datetime.now().isoformat()}\n")
        self.file.write("=" * 80 + "\n")
        self.file.close()


class StageLogger:
    """阶段日志记录器，记录每个处理阶段的耗时"""

    def __init__(self, task_logger: TaskLogger):
        self.task_logger = task_logger
        self.current_stage = None
        self.stage_start = None
        self.durations: dict[str, float] = {}

    def start_stage(self, name: str):
        if self.current_stage:
            self.end_stage(success=False)
        self.current_stage = name
        self.stage_start = datetime.now()
        self.task_logger.log(f"{'=' * 20} 阶段: {name} {'=' * 20}")

    def end_stage(self, success: bool = True):
        if not self.current_stage:
            return
        duration = (datetime.now() - self.stage_start).total_seconds()
        self.durations[self.current_stage] = duration
        status = "✓ 成功" if success else "✗ 失败"
        level = "INFO" if success else "WARNING"
        self.task_logger.log(f"{'=' * 20} {status} | 耗时: {duration:.2f}s {'=' * 20}", level)
        self.current_stage = None
