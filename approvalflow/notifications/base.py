"""Base notification dispatcher interface."""

from __future__ import annotations

import abc
from typing import Mapping


class BaseNotifier(metaclass=abc.ABCMeta):
    """Accepts a template name and variables and dispatches asynchronously.

    ``send`` returns once the message has been accepted for delivery. It
    raises ``NotificationRejected`` when dispatch is refused.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, template: str, variables: Mapping[str, str]) -> None:
        """Dispatch ``template`` rendered with ``variables``."""
        raise NotImplementedError
