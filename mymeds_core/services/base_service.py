# =============================================================================
# mymeds_core/services/base_service.py
# Standard result container for non-throwing operations
# =============================================================================

from __future__ import annotations
from typing import Optional, Dict, Any
from dataclasses import dataclass

from mymeds_core.errors import MyMedsError


@dataclass
class ServiceResult:
    """
    Standard result container for operations whose failure must not
    interrupt the caller (draft saves, replays).
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, data: Any = None, metadata: Dict[str, Any] = None) -> ServiceResult:
        """Create a successful result"""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str = "UNKNOWN",
        metadata: Dict[str, Any] = None
    ) -> ServiceResult:
        """Create a failed result"""
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            metadata=metadata,
        )

    @classmethod
    def from_exception(cls, e: Exception) -> ServiceResult:
        """Create a failed result from an exception"""
        if isinstance(e, MyMedsError):
            return cls(
                success=False,
                error=e.user_message,
                error_code=e.code,
                metadata=e.details,
            )
        return cls(
            success=False,
            error=str(e),
            error_code="EXCEPTION",
        )
