"""Signal relay: wire schemas, registry state and the FastAPI app."""
