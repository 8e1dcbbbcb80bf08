"""
API Module Initialization

Exports the scheduling router and its dependencies.
"""

from appointment_engine.api.routes import (
    router as scheduling_router,
    get_calendar_provider,
    get_scheduling_engine,
)

__all__ = [
    "scheduling_router",
    "get_calendar_provider",
    "get_scheduling_engine",
]
