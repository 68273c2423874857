"""Billing domain - Group session detection, rate resolution, monthly preview and invoicing"""

from .router import router

__all__ = ["router"]
