from dispatch_engine.core.interfaces.message_queue import BatchQueue
from dispatch_engine.core.interfaces.transport import BatchTransport, Transport

__all__ = ["BatchQueue", "BatchTransport", "Transport"]
