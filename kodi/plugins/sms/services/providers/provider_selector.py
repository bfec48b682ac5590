from kodi.plugins.sms.models.models import Provider
from kodi.plugins.sms.services.providers.base import BaseProvider
from kodi.plugins.sms.services.providers.textsms import TextSmsProvider

PROVIDERS: dict[str, type[BaseProvider]] = {
    Provider.textsms.value: TextSmsProvider,
}


def get_provider(name: str, api_key: str | None = None) -> BaseProvider:
    """Factory function for selecting an SMS provider."""
    provider_cls = PROVIDERS.get(name.lower())
    if not provider_cls:
        raise ValueError(f"Unsupported provider: {name}")
    return provider_cls(api_key)
