"""Prepaid domain - Per-client prepaid balance ledger"""

from .router import router

__all__ = ["router"]
