"""stowage: named caches with interchangeable LRU, memory-mapped and Redis backends."""

__version__ = "0.1.0"
