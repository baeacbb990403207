"""Domain layer: models and service protocols."""
