"""
RAG (Retrieval Augmented Generation) app.

Provides:
- Query embedding with the ingestion embedding client
- Tenant-scoped hybrid search over manual chunks and figures
- Adaptive answer style from retrieval signals
- Answer generation with citations and query logging
"""
