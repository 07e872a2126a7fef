"""contextrag: retrieval, ranking and context assembly for RAG answer synthesis."""

__version__ = "0.1.0"
