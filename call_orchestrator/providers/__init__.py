"""Adapters for the external speech, generation and agent backends."""
