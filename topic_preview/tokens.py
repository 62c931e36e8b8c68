"""One-shot tokens marking whether an asynchronous operation is still pending."""

from __future__ import annotations

from enum import Enum


class TokenState(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"


class OperationToken:
    """Two-state token; only the first ``settle()`` call wins."""

    __slots__ = ("name", "state")

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.state = TokenState.PENDING

    @property
    def pending(self) -> bool:
        return self.state is TokenState.PENDING

    def settle(self) -> bool:
        if self.state is TokenState.SETTLED:
            return False
        self.state = TokenState.SETTLED
        return True

    def __repr__(self) -> str:
        return f"OperationToken({self.name!r}, {self.state.value})"


__all__ = ["OperationToken", "TokenState"]
