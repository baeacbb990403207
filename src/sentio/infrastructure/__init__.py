"""Concrete implementations of the domain service protocols."""
