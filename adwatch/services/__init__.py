"""Service layer for AdWatch."""
