"""Sentio: memory-augmented email reply engine."""
