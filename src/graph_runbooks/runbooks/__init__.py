from __future__ import annotations

from typing import Callable, Dict, List

from ..util.errors import ConfigError
from .base import Runbook, RunContext

RunbookFactory = Callable[[], Runbook]


class RunbookRegistry:
    """
    Registry mapping runbook names (as used on the command line) to factories.
    """

    def __init__(self) -> None:
        self._map: Dict[str, RunbookFactory] = {}

    def register(self, name: str, factory: RunbookFactory) -> None:
        self._map[name] = factory

    def is_registered(self, name: str) -> bool:
        return name in self._map

    def names(self) -> List[str]:
        return sorted(self._map.keys())

    def get(self, name: str) -> Runbook:
        factory = self._map.get(name)
        if factory is None:
            raise ConfigError(f"Unknown runbook: {name} (available: {', '.join(self.names())})")
        return factory()


_global_registry = RunbookRegistry()


def register_runbook(name: str, factory: RunbookFactory) -> None:
    _global_registry.register(name, factory)


def get_runbook(name: str) -> Runbook:
    return _global_registry.get(name)


def is_runbook_registered(name: str) -> bool:
    return _global_registry.is_registered(name)


def list_runbooks() -> List[Runbook]:
    return [_global_registry.get(name) for name in _global_registry.names()]


def register_builtin_runbooks() -> None:
    from .app_credentials import AppCredentialExpiryRunbook
    from .device_compliance import DeviceComplianceRunbook
    from .group_sync import GroupSyncRunbook
    from .inactive_users import InactiveUsersRunbook
    from .license_availability import LicenseAvailabilityRunbook
    from .mfa_status import MfaStatusRunbook
    from .pim_activations import PimActivationsRunbook
    from .subscription_cost import SubscriptionCostRunbook

    for factory in (
        AppCredentialExpiryRunbook,
        DeviceComplianceRunbook,
        GroupSyncRunbook,
        InactiveUsersRunbook,
        LicenseAvailabilityRunbook,
        MfaStatusRunbook,
        PimActivationsRunbook,
        SubscriptionCostRunbook,
    ):
        register_runbook(factory.name, factory)


register_builtin_runbooks()

__all__ = [
    "Runbook",
    "RunContext",
    "RunbookRegistry",
    "get_runbook",
    "is_runbook_registered",
    "list_runbooks",
    "register_runbook",
]
