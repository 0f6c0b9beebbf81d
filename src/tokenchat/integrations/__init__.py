"""Clients for external model providers: chat completions and embeddings."""
