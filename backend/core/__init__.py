"""
核心模块
"""
from .kie_client import KieClient, KieConfig, GenerationRequest
from .task_poller import TaskPoller
from .image_fetcher import ImageFetcher, ImageFetchError
from .image_optimizer import ImageOptimizer, OptimizeRequestError
from .queue_processor import QueueProcessor, QueueProcessingError, QueueItemNotFound, QueueItemBusy

__all__ = [
    'KieClient',
    'KieConfig',
    'GenerationRequest',
    'TaskPoller',
    'ImageFetcher',
    'ImageFetchError',
    'ImageOptimizer',
    'OptimizeRequestError',
    'QueueProcessor',
    'QueueProcessingError',
    'QueueItemNotFound',
    'QueueItemBusy'
]
