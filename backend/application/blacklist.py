"""Customer blacklist gate consumed before a rental starts."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from app.config import AppConfig


@dataclass(frozen=True)
class BlacklistVerdict:
    can_book: bool
    reason: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"canBook": self.can_book, "reason": self.reason, "warning": self.warning}


ALLOWED = BlacklistVerdict(can_book=True)


class BlacklistGate(ABC):
    @abstractmethod
    def check_customer(self, customer_ref: str) -> BlacklistVerdict:
        raise NotImplementedError


class StaticBlacklistGate(BlacklistGate):
    """Verdicts from the ``blacklist`` config section (customer ref -> reason)."""

    def __init__(self, blocked: Optional[Mapping[str, str]] = None, warned: Optional[Mapping[str, str]] = None):
        self.blocked = dict(blocked or {})
        self.warned = dict(warned or {})

    @classmethod
    def from_config(cls, config: AppConfig) -> "StaticBlacklistGate":
        section = config.blacklist
        return cls(section.get("blocked") or {}, section.get("warned") or {})

    def update_config(self, config: AppConfig) -> None:
        section = config.blacklist
        self.blocked = dict(section.get("blocked") or {})
        self.warned = dict(section.get("warned") or {})

    def check_customer(self, customer_ref: str) -> BlacklistVerdict:
        if customer_ref in self.blocked:
            return BlacklistVerdict(can_book=False, reason=self.blocked[customer_ref] or "Customer is blacklisted")
        if customer_ref in self.warned:
            return BlacklistVerdict(can_book=True, warning=self.warned[customer_ref] or "Customer has a warning flag")
        return ALLOWED
