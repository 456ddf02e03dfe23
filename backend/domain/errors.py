"""Typed rejections and non-fatal outcome payloads shared by every service."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class RentalEngineError(Exception):
    """Base rejection. ``reason`` is a stable code callers can branch on."""

    status_code = 400

    def __init__(self, reason: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.reason = reason
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "reason": self.reason}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(RentalEngineError):
    """Malformed or out-of-range input. Never retried."""

    status_code = 400


class NotFoundError(RentalEngineError):
    status_code = 404


class ConflictError(RentalEngineError):
    """The request is well-formed but the current state forbids it. No side effects."""

    status_code = 409


@dataclass
class ConsistencyWarning:
    """The secondary write of a transition failed after all retries.

    The primary transition is committed; the vehicle flag needs manual repair
    (see ``ReconciliationService.repair_vehicle_flags``).
    """

    rental_id: str
    vehicle_ref: str
    expected_status: str
    attempts: int
    message: str
    occurred_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "consistency",
            "rentalId": self.rental_id,
            "vehicleRef": self.vehicle_ref,
            "expectedStatus": self.expected_status,
            "attempts": self.attempts,
            "message": self.message,
            "occurredAt": self.occurred_at.isoformat() if self.occurred_at else None,
        }


@dataclass
class ReconciliationError:
    """One failed record inside a batch job."""

    record_id: str
    error: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"recordId": self.record_id, "error": self.error, **self.context}
