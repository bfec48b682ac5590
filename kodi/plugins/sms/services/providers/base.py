from abc import ABC, abstractmethod
from typing import Any, Dict


class BaseProvider(ABC):
    """Abstract base class for SMS gateways."""

    name: str = "base"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key

    @abstractmethod
    async def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send a message. payload carries at least `to` and `message`."""
        pass

    @abstractmethod
    async def balance(self) -> Dict[str, Any]:
        """Check account balance or credits."""
        pass

    @staticmethod
    def message_id(response: Dict[str, Any]) -> str | None:
        """Provider message id from a send() response, if any."""
        return None

    def sanitize_payload(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Optional helper to clean or standardize payload data."""
        return data
