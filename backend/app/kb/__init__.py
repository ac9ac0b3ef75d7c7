"""
Knowledge Base module for per-agent document storage and retrieval.

Provides:
- ZIP archive upload and safe extraction
- Local filesystem and Google Cloud Storage backends
- A persisted agent/file registry
- Token-budgeted markdown context for each agent
"""
