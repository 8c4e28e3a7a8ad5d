"""Markdown document indexing and retrieval over a local Ollama backend."""
