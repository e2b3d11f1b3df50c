from dispatch_engine.infrastructure.transports.http_transport import HttpTransport

__all__ = ["HttpTransport"]
