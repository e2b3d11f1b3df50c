from dispatch_engine.infrastructure.message_queue.backpressure_buffer import (
    FifoBackpressureBuffer,
    PartitionedBackpressureBuffer,
    create_buffer,
)

__all__ = ["FifoBackpressureBuffer", "PartitionedBackpressureBuffer", "create_buffer"]
