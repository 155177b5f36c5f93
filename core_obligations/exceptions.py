"""
Error Taxonomy Module

Every failure the engine reports carries a stable classification code and a
human-readable message. All of them are raised before or inside the
operation's transaction, so nothing partial is ever persisted.
"""

from typing import Any, Dict, Optional


class ObligationError(Exception):
    """Base exception for all obligation engine errors"""
    
    code = "obligation_error"
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        """Error payload for callers"""
        payload = {"status": "error", "code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ObligationError):
    """Bad input terms, rejected before any write"""
    
    code = "validation_error"


class InvalidScheduleError(ValidationError):
    """Schedule parameters cannot produce a schedule (e.g. zero installments)"""
    
    code = "invalid_schedule"


class UnsupportedFrequencyError(ValidationError):
    """Frequency has no configured period unit"""
    
    code = "unsupported_frequency"


class NotFoundError(ObligationError):
    """Referenced loan, service, schedule entry or payment does not exist"""
    
    code = "not_found"
    
    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} {entity_id} not found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(ObligationError):
    """Unique constraint violation"""
    
    code = "conflict"
