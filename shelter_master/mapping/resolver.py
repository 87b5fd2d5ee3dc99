"""
Address Resolver
================

Maps (site, device type, unit, command key) to a transaction descriptor.

Resolution order:
    1. Cached command for the four-part identity
    2. Existence checks (site, device type, unit), negatively memoized
    3. Walk of the site mapping table, result cached

Composite time commands never resolve to a descriptor; callers resolve the
_HOUR/_MINUTE pair instead.
"""

import logging
from typing import Dict, List, Optional, Tuple

from shelter_master.errors import (
    TimeCompositeCommandError,
    UnknownDeviceTypeError,
    UnknownSiteError,
    UnknownUnitError,
    UnsupportedCommandError,
)
from shelter_master.mapping.cache import ResolverCache
from shelter_master.mapping.models import (
    MappedCommand,
    PlainCommand,
    TimeCompositeCommand,
    TransactionDescriptor,
)
from shelter_master.mapping.table import SiteMapping, load_site_mapping

logger = logging.getLogger(__name__)


class AddressResolver:
    """
    Resolve abstract command keys against the loaded site mappings.

    Args:
        cache: Injected ResolverCache (owned by the engine wiring)
        sites: Preloaded SiteMapping objects by site id; unknown sites are
            loaded lazily from the catalogue on first use
    """

    def __init__(self, cache: ResolverCache, sites: Optional[Dict[str, SiteMapping]] = None):
        self.cache = cache
        self.sites: Dict[str, Optional[SiteMapping]] = dict(sites or {})

    def get_site(self, site_id: str) -> SiteMapping:
        exists = self.cache.get_exists(("site", site_id))
        if exists is False:
            raise UnknownSiteError(site_id)

        if site_id not in self.sites:
            self.sites[site_id] = load_site_mapping(site_id)
        site = self.sites[site_id]

        self.cache.put_exists(("site", site_id), site is not None)
        if site is None:
            raise UnknownSiteError(site_id)
        return site

    def _check_device_type(self, site: SiteMapping, device_type: str):
        key = ("device_type", site.site_id, device_type)
        exists = self.cache.get_exists(key)
        if exists is None:
            exists = site.has_device_type(device_type)
            self.cache.put_exists(key, exists)
        if not exists:
            raise UnknownDeviceTypeError(site.site_id, device_type, site.find_similar_device_type(device_type))

    def _check_unit(self, site: SiteMapping, device_type: str, unit_id: Optional[str]):
        key = ("unit", site.site_id, device_type, unit_id)
        exists = self.cache.get_exists(key)
        if exists is None:
            exists = site.has_unit(device_type, unit_id)
            self.cache.put_exists(key, exists)
        if not exists:
            raise UnknownUnitError(site.site_id, device_type, unit_id)

    def resolve_command(self, site_id: str, device_type: str, unit_id: Optional[str],
                        command_key: str) -> MappedCommand:
        """
        Resolve a command key to its typed mapping entry.

        Raises:
            UnknownSiteError, UnknownDeviceTypeError, UnknownUnitError,
            UnsupportedCommandError
        """
        site = self.get_site(site_id)
        if site.is_system_port(device_type):
            unit_id = None
        cache_key = (site_id, device_type, unit_id, command_key)

        command = self.cache.get_command(cache_key)
        if command is not None:
            return command

        self._check_device_type(site, device_type)
        self._check_unit(site, device_type, unit_id)

        command = site.get_command(device_type, unit_id, command_key)
        if command is None:
            raise UnsupportedCommandError(site_id, device_type, unit_id, command_key,
                                          hint=self._unsupported_hint(device_type, command_key))

        self.cache.put_command(cache_key, command)
        logger.debug(f"Resolved {site_id}/{device_type}/{unit_id}/{command_key}: {command}")
        return command

    def resolve(self, site_id: str, device_type: str, unit_id: Optional[str],
                command_key: str) -> TransactionDescriptor:
        """
        Resolve a plain command key to its transaction descriptor.

        Raises:
            TimeCompositeCommandError: the key is a time-composite command
        """
        command = self.resolve_command(site_id, device_type, unit_id, command_key)
        if isinstance(command, TimeCompositeCommand):
            raise TimeCompositeCommandError(command_key)
        return command.descriptor

    def get_polling_keys(self, site_id: str, device_type: str, unit_id: Optional[str]) -> List[str]:
        """GET_ action keys to poll for one unit (or system port group)."""
        site = self.get_site(site_id)
        if site.is_system_port(device_type):
            unit_id = None
        self._check_device_type(site, device_type)
        self._check_unit(site, device_type, unit_id)
        return [command.key for command in site.get_polling_actions(device_type, unit_id)]

    def resolve_time_pair(self, site_id: str, device_type: str, unit_id: Optional[str],
                          command_key: str) -> Tuple[PlainCommand, PlainCommand]:
        """Resolve the HOUR and MINUTE halves of a time-composite command."""
        command = self.resolve_command(site_id, device_type, unit_id, command_key)
        if not isinstance(command, TimeCompositeCommand):
            raise UnsupportedCommandError(site_id, device_type, unit_id, command_key,
                                          hint="Not a time-composite command")
        hour = self.resolve_command(site_id, device_type, unit_id, command.hour_key)
        minute = self.resolve_command(site_id, device_type, unit_id, command.minute_key)
        return hour, minute

    @staticmethod
    def _unsupported_hint(device_type: str, command_key: str) -> Optional[str]:
        if "_TIME_2" in command_key and device_type != "lighting":
            return (f"Only lighting supports schedule 2 (START_TIME_2, END_TIME_2); "
                    f"use schedule 1 for {device_type}")
        return None
