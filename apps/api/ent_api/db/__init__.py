"""Database layer: models, engine builder, sessions, Redis."""
