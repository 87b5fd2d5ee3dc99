"""
Port Mapping Tables
===================

Per-site catalogue: device type -> unit id -> command key -> entry.

An entry is either the TIME_INTEGRATED marker (time-composite command) or:

    {"port": {"functionCode": 3, "address": 120},
     "collection": "data", "field": "cur_temp", "type": "number", "scale": 10}

Common system ports (DDC clock, seasonal flags) have no unit level and are
shared by every site. The tables are plain data, parsed once by SiteMapping.
"""

from typing import Dict, Iterable

from protocols.modbus.register_map import HW_PORTS, TEMPERATURE_SCALE
from shelter_master.mapping.models import TIME_INTEGRATED


def _entry(port: Dict, field: str, value_type: str = "number", collection: str = "data",
           scale: int = None) -> Dict:
    entry = {"port": dict(port), "collection": collection, "field": field, "type": value_type}
    if scale:
        entry["scale"] = scale
    return entry


def _set_get(ports: Dict, port_name: str, command: str, field: str, value_type: str = "number",
             scale: int = None) -> Dict:
    group = ports[port_name]
    entries = {}
    if "set" in group:
        entries[f"SET_{command}"] = _entry(group["set"], field, value_type, scale=scale)
    if "get" in group:
        entries[f"GET_{command}"] = _entry(group["get"], field, value_type, scale=scale)
    return entries


def _schedules(ports: Dict, numbers: Iterable[int]) -> Dict:
    """Composite START/END_TIME_n keys plus their _HOUR/_MINUTE register halves."""
    entries = {}
    for n in numbers:
        for edge in ("START", "END"):
            base = f"{edge}_TIME_{n}"
            field = base.lower()
            entries[f"SET_{base}"] = TIME_INTEGRATED
            entries[f"GET_{base}"] = TIME_INTEGRATED
            entries.update(_set_get(ports, f"SCHED{n}_{edge}_HOUR", f"{base}_HOUR", f"{field}_hour"))
            entries.update(_set_get(ports, f"SCHED{n}_{edge}_MIN", f"{base}_MINUTE", f"{field}_minute"))
    return entries


def _switched_unit(do_port: str, schedules=(1,), power: bool = True) -> Dict:
    """Unit wired to one DO channel (lighting, door, external switch)."""
    ports = HW_PORTS[do_port]
    unit = _set_get(ports, "AUTO", "AUTO", "auto", "boolean")
    if power:
        unit.update(_set_get(ports, "POWER", "POWER", "power", "boolean"))
    unit.update(_schedules(ports, schedules))
    return unit


def _cooler_unit() -> Dict:
    ports = HW_PORTS["COOLER"]
    unit = {}
    unit.update(_set_get(ports, "AUTO", "AUTO", "auto", "boolean"))
    unit.update(_set_get(ports, "POWER", "POWER", "power", "boolean"))
    unit.update(_set_get(ports, "MODE", "MODE", "mode"))
    unit.update(_set_get(ports, "SPEED", "SPEED", "speed"))
    unit.update(_set_get(ports, "SUMMER_CONT_TEMP", "SUMMER_CONT_TEMP", "summer_cont_temp",
                         scale=TEMPERATURE_SCALE))
    unit.update(_set_get(ports, "WINTER_CONT_TEMP", "WINTER_CONT_TEMP", "winter_cont_temp",
                         scale=TEMPERATURE_SCALE))
    unit.update(_set_get(ports, "CUR_TEMP", "CUR_TEMP", "cur_temp", scale=TEMPERATURE_SCALE))
    unit.update(_set_get(ports, "ALARM", "ALARM", "alarm"))
    unit.update(_schedules(ports, (1,)))
    return unit


def _exchanger_unit() -> Dict:
    ports = HW_PORTS["EXCHANGER"]
    unit = {}
    unit.update(_set_get(ports, "AUTO", "AUTO", "auto", "boolean"))
    unit.update(_set_get(ports, "POWER", "POWER", "power", "boolean"))
    unit.update(_set_get(ports, "MODE", "MODE", "mode"))
    unit.update(_set_get(ports, "SPEED", "SPEED", "speed"))
    unit.update(_set_get(ports, "ALARM", "ALARM", "alarm"))
    unit.update(_schedules(ports, (1,)))
    return unit


def _integrated_sensor_unit() -> Dict:
    ports = HW_PORTS["INTEGRATED_SENSOR"]
    unit = {}
    for port_name, field in (("PM10", "pm10"), ("PM25", "pm25"), ("PM100", "pm100"),
                             ("CO2", "co2"), ("VOC", "voc"), ("ALARM", "alarm")):
        unit.update(_set_get(ports, port_name, port_name, field))
    unit.update(_set_get(ports, "TEMP", "TEMP", "temp", scale=TEMPERATURE_SCALE))
    unit.update(_set_get(ports, "HUM", "HUM", "hum", scale=TEMPERATURE_SCALE))
    return unit


def _common_system_ports() -> Dict:
    clock = HW_PORTS["DDC_TIME"]
    ddc_time = {}
    for port_name, command in (("YEAR", "YEAR"), ("MONTH", "MONTH"), ("DAY", "DAY"), ("DOW", "DOW"),
                               ("HOUR", "HOUR"), ("MIN", "MINUTE"), ("SECOND", "SECOND")):
        group = clock[port_name]
        ddc_time[f"SET_{command}"] = _entry(group["set"], command.lower(), collection="ddcConfig")
        ddc_time[f"GET_{command}"] = _entry(group["get"], command.lower(), collection="ddcConfig")

    seasonal_ports = HW_PORTS["SEASONAL"]
    seasonal = {
        "SET_SEASON": _entry(seasonal_ports["SEASON"]["set"], "season", collection="ddcConfig"),
        "GET_SEASON": _entry(seasonal_ports["SEASON"]["get"], "season", collection="ddcConfig"),
    }
    month_fields = ["january", "february", "march", "april", "may", "june", "july",
                    "august", "september", "october", "november", "december"]
    for (month, group), field in zip(seasonal_ports["MONTHLY_SUMMER"].items(), month_fields):
        seasonal[f"SET_{month}_SUMMER"] = _entry(group["set"], field, "boolean", collection="ddcConfig")
        seasonal[f"GET_{month}_SUMMER"] = _entry(group["get"], field, "boolean", collection="ddcConfig")

    return {"ddc_time": ddc_time, "seasonal": seasonal}


COMMON_SYSTEM_PORTS = _common_system_ports()

SITE_PORT_MAPPINGS: Dict[str, Dict] = {
    "c0101": {
        "lighting": {
            "u001": _switched_unit("DO1", schedules=(1, 2)),
            "u002": _switched_unit("DO2", schedules=(1, 2)),
        },
        "cooler": {"u001": _cooler_unit()},
        "integrated_sensor": {"u001": _integrated_sensor_unit()},
    },
    "c0102": {
        "lighting": {"u001": _switched_unit("DO1", schedules=(1, 2))},
        "door": {"u001": _switched_unit("DO5")},
    },
    "c0103": {
        "lighting": {
            "u001": _switched_unit("DO1", schedules=(1, 2)),
            "u002": _switched_unit("DO3", schedules=(1, 2)),
        },
        "cooler": {"u001": _cooler_unit()},
        "exchanger": {"u001": _exchanger_unit()},
        "externalsw": {"u001": _switched_unit("DO13", power=False)},
    },
}
