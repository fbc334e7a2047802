"""
AdWatch API - FastAPI application for monitoring runs and alert handling.

Provides REST endpoints for triggering monitoring, listing and updating
alerts, and reviewing creative fatigue signals.
"""

__version__ = "0.1.0"
