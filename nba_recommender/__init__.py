"""Rule-driven next-best-action recommender with an auditable lifecycle."""

__version__ = "0.1.0"
