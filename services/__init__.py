from .notifications import EventPublisher
from .queue_service import QueueService

__all__ = ['EventPublisher', 'QueueService']
