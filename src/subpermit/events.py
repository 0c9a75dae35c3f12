"""Allowance-change notifications."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalForSubscription:
    """Emitted on every allowance mutation with the resulting amount."""

    owner: str
    spender: str
    amount: int
    interval: int
    expiry: int

    def to_dict(self) -> dict:
        d = asdict(self)
        # JSON consumers lose precision above 2**53
        d["amount"] = str(self.amount)
        d["interval"] = str(self.interval)
        d["expiry"] = str(self.expiry)
        return d


Listener = Callable[[ApprovalForSubscription], None]


class Notifier:
    """Fan-out of approval events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: ApprovalForSubscription) -> None:
        """Deliver to every listener; one failing listener does not starve the rest."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Approval listener %r failed", listener)
