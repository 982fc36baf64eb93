"""Notes service: notes, folders and per-user history of recently accessed notes."""

__version__ = "1.0.0"
