"""Appointments domain - Completion job and cancellation"""

from .router import router

__all__ = ["router"]
