# =============================================================================
# mymeds_core/services/__init__.py
# Shared service result type
# =============================================================================

from .base_service import ServiceResult

__all__ = ["ServiceResult"]
