"""Platform registry: maps platform ids to adapter classes."""

import requests

from adapters import PracticeManagementAdapter
from cleo_client import CleoClient
from clients import ConfigurationError
from models import PlatformConfig
from mycase_client import MyCaseClient
from practicepanther_client import PracticePantherClient

PLATFORM_ADAPTERS = {
    CleoClient.platform: CleoClient,
    MyCaseClient.platform: MyCaseClient,
    PracticePantherClient.platform: PracticePantherClient,
}


def create_adapter(config: PlatformConfig, session: requests.Session | None = None) -> PracticeManagementAdapter:
    """Instantiate the adapter for `config.platform`."""
    adapter_cls = PLATFORM_ADAPTERS.get(config.platform)
    if adapter_cls is None:
        known = ", ".join(sorted(PLATFORM_ADAPTERS))
        raise ConfigurationError(f"Unknown platform '{config.platform}' (known: {known})", config.platform)
    return adapter_cls(config, session=session)


def create_adapters(configs: dict[str, PlatformConfig]) -> dict[str, PracticeManagementAdapter]:
    return {name: create_adapter(config) for name, config in configs.items()}
