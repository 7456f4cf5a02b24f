"""Follow-up app module.

Provides the FastAPI router for follow-up cron, manual trigger, status and
invoice event hook endpoints.
"""

from .api import router as followup_router  # re-export for app integration

__all__ = ["followup_router"]
