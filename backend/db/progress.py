"""
队列进度上报
"""
from typing import Optional

from . import crud


class SqliteProgressReporter:
    """基于 processing_queue 表的进度上报器

    处理流程按固定检查点调用 update：10 -> 30 -> 50 -> 80 -> 100
    """

    def __init__(self, queue_item_id: str):
        self.queue_item_id = queue_item_id
        self.checkpoints: list[int] = []

    async def update(self, progress: int, status: Optional[str] = None, **fields) -> None:
        if status is not None:
            fields["status"] = status
        crud.update_queue_item(self.queue_item_id, progress=progress, **fields)
        self.checkpoints.append(progress)
