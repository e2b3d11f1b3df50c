from dispatch_engine.infrastructure.sources.jsonl_source import JsonLinesSource

__all__ = ["JsonLinesSource"]
