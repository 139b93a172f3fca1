"""Bearer tokens for HTTP-streamed agents."""

from abc import ABC, abstractmethod

from claw_kanban.core.config import Settings
from claw_kanban.core.runner.errors import CredentialError


class TokenProvider(ABC):
    """Returns a currently valid bearer token for a provider.

    Implementations may refresh the token behind the call.
    """

    @abstractmethod
    async def get_token(self, provider: str) -> str:
        ...


class SettingsTokenProvider(TokenProvider):
    """Static tokens taken from configuration."""

    def __init__(self, settings: Settings):
        self._tokens = {
            "copilot": settings.COPILOT_TOKEN,
            "gemini-api": settings.GEMINI_API_TOKEN,
        }

    async def get_token(self, provider: str) -> str:
        token = self._tokens.get(provider)
        if not token:
            raise CredentialError(f"no token configured for {provider}")
        return token
