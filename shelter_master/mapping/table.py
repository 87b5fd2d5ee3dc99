"""
Site Mapping Table
==================

Parsed, read-only view over one site's port mapping table.

Features:
    - Typed lookup (device type -> unit -> command key -> MappedCommand)
    - Common system ports (ddc_time, seasonal) without a unit level
    - Reverse lookup of the target field for an action key
    - Validation of raw tables and detection of register conflicts
    - Similar device type suggestions for diagnostics
"""

import difflib
import logging
from typing import Dict, List, Optional, Tuple

from shelter_master.mapping.models import (
    MappedCommand,
    PlainCommand,
    TimeCompositeCommand,
    parse_entry,
)
from shelter_master.mapping.sites import COMMON_SYSTEM_PORTS, SITE_PORT_MAPPINGS
from protocols.modbus.register_map import READ_FUNCTION_CODES, WRITE_FUNCTION_CODES

logger = logging.getLogger(__name__)

SIMILARITY_CUTOFF = 0.3


class SiteMapping:
    """Port mapping of a single site, parsed once at construction."""

    def __init__(self, site_id: str, raw_devices: Dict, raw_system_ports: Dict = None):
        self.site_id = site_id
        self.devices: Dict[str, Dict[str, Dict[str, MappedCommand]]] = {}
        self.system_ports: Dict[str, Dict[str, MappedCommand]] = {}

        for device_type, units in raw_devices.items():
            self.devices[device_type] = {
                unit_id: {key: parse_entry(key, entry) for key, entry in commands.items()}
                for unit_id, commands in units.items()
            }
        for port_type, commands in (raw_system_ports or {}).items():
            self.system_ports[port_type] = {key: parse_entry(key, entry) for key, entry in commands.items()}

        logger.debug(f"Site mapping {site_id} loaded: {len(self.devices)} device types, "
                     f"{len(self.system_ports)} system port groups")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def is_system_port(self, device_type: str) -> bool:
        return device_type in self.system_ports

    def has_device_type(self, device_type: str) -> bool:
        return device_type in self.devices or device_type in self.system_ports

    def has_unit(self, device_type: str, unit_id: Optional[str]) -> bool:
        if self.is_system_port(device_type):
            return True
        return unit_id in self.devices.get(device_type, {})

    def get_device_types(self) -> List[str]:
        return list(self.devices)

    def get_units(self, device_type: str) -> List[str]:
        return list(self.devices.get(device_type, {}))

    def get_commands(self, device_type: str, unit_id: Optional[str] = None) -> Dict[str, MappedCommand]:
        if self.is_system_port(device_type):
            return self.system_ports[device_type]
        return self.devices.get(device_type, {}).get(unit_id, {})

    def get_command(self, device_type: str, unit_id: Optional[str], command_key: str) -> Optional[MappedCommand]:
        return self.get_commands(device_type, unit_id).get(command_key)

    def is_time_composite(self, device_type: str, unit_id: Optional[str], command_key: str) -> bool:
        return isinstance(self.get_command(device_type, unit_id, command_key), TimeCompositeCommand)

    def get_polling_actions(self, device_type: str, unit_id: Optional[str] = None) -> List[MappedCommand]:
        """
        GET_ actions for one unit (or system port group).

        HOUR/MINUTE halves covered by a composite GET are left out: the
        composite reads both halves itself.
        """
        commands = self.get_commands(device_type, unit_id)
        covered = set()
        for command in commands.values():
            if isinstance(command, TimeCompositeCommand) and command.is_get:
                covered.update((command.hour_key, command.minute_key))
        return [c for key, c in commands.items() if key.startswith("GET_") and key not in covered]

    def get_field_for_action(self, device_type: str, unit_id: Optional[str], action_key: str) -> Optional[str]:
        command = self.get_command(device_type, unit_id, action_key)
        return command.field if command else None

    def find_similar_device_type(self, device_type: str) -> Optional[str]:
        """Closest mapped device type name, used in diagnostics for typos."""
        candidates = list(self.devices) + list(self.system_ports)
        matches = difflib.get_close_matches(device_type, candidates, n=1, cutoff=SIMILARITY_CUTOFF)
        return matches[0] if matches else None

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def validate(self) -> List[str]:
        """Check structural consistency; returns a list of error strings."""
        errors = []
        groups = [((dt, uid), cmds) for dt, units in self.devices.items() for uid, cmds in units.items()]
        groups += [((pt, None), cmds) for pt, cmds in self.system_ports.items()]

        for (device_type, unit_id), commands in groups:
            where = f"{self.site_id}/{device_type}" + (f"/{unit_id}" if unit_id else "")
            for key, command in commands.items():
                if isinstance(command, TimeCompositeCommand):
                    for half in (command.hour_key, command.minute_key):
                        if not isinstance(commands.get(half), PlainCommand):
                            errors.append(f"{where}: {key} is missing its sub-command {half}")
                    continue

                fc = command.descriptor.function_code
                if key.startswith("GET_") and fc not in READ_FUNCTION_CODES:
                    errors.append(f"{where}: {key} uses non-read function code {fc}")
                elif key.startswith("SET_") and fc not in WRITE_FUNCTION_CODES:
                    errors.append(f"{where}: {key} uses non-write function code {fc}")
                elif not key.startswith(("GET_", "SET_")):
                    errors.append(f"{where}: {key} must start with GET_ or SET_")
                if command.descriptor.address < 0 or command.descriptor.address > 0xFFFF:
                    errors.append(f"{where}: {key} address {command.descriptor.address} out of range")

        return errors

    def find_port_conflicts(self) -> List[Dict]:
        """
        Detect write registers shared by different fields.

        Two SET commands writing the same (function code, address) into
        different fields would silently overwrite each other on the DDC.
        """
        writers: Dict[Tuple[int, int], List[Tuple[str, str]]] = {}
        for device_type, units in self.devices.items():
            for unit_id, commands in units.items():
                for key, command in commands.items():
                    if isinstance(command, PlainCommand) and command.descriptor.is_write:
                        target = (int(command.descriptor.function_code), command.descriptor.address)
                        writers.setdefault(target, []).append((f"{device_type}/{unit_id}/{key}", command.field))

        conflicts = []
        for (fc, address), users in writers.items():
            owners = {(path.rsplit("/", 1)[0], field) for path, field in users}
            if len(owners) > 1:
                conflicts.append({
                    "functionCode": fc,
                    "address": address,
                    "commands": [path for path, _ in users],
                })
        return conflicts


def load_site_mapping(site_id: str, mappings: Dict = None, system_ports: Dict = None) -> Optional[SiteMapping]:
    """Parse the mapping of one site; None if the site is not catalogued."""
    mappings = SITE_PORT_MAPPINGS if mappings is None else mappings
    raw = mappings.get(site_id)
    if raw is None:
        return None
    return SiteMapping(site_id, raw, COMMON_SYSTEM_PORTS if system_ports is None else system_ports)


def get_available_sites(mappings: Dict = None) -> List[str]:
    return list(SITE_PORT_MAPPINGS if mappings is None else mappings)
