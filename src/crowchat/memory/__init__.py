"""Memory extraction from completed chat turns."""

from .extractor import ExtractedMemory, MemoryExtractor, MemorySink, format_conversation, parse_memories
from .sink import JsonlMemorySink

__all__ = [
    "ExtractedMemory",
    "JsonlMemorySink",
    "MemoryExtractor",
    "MemorySink",
    "format_conversation",
    "parse_memories",
]
