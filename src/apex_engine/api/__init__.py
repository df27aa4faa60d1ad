"""API routes for APEX.

Includes:
- tasks: task creation, execution control and status updates
"""

from apex_engine.api.tasks import router as tasks_router

__all__ = ["tasks_router"]
