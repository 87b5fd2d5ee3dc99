"""
Shelter Master Configuration
Operating parameters for the shelter controller polling and control engine
"""

import os
from typing import Dict, List


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ==================== SITE ====================

# Site (client) whose port mapping table is loaded at startup
SITE_ID = os.getenv("SHELTER_SITE_ID", "c0101")

# Device types the control path is allowed to drive over the field protocol
SUPPORTED_UNIT_TYPES: List[str] = [
    "integrated_sensor",
    "cooler",
    "exchanger",
    "lighting",
    "aircurtain",
    "bench",
    "door",
    "externalsw",
]

# ==================== FIELD PROTOCOL ====================

MODBUS_CONFIG = {
    "host": os.getenv("MODBUS_HOST", "127.0.0.1"),
    "port": int(os.getenv("MODBUS_PORT", "502")),
    "unit_id": int(os.getenv("MODBUS_UNIT_ID", "1")),
    "timeout_s": float(os.getenv("MODBUS_TIMEOUT_S", "2.0")),
    "use_mock": _env_bool("MODBUS_MOCK", "true"),  # Simulated DDC instead of a TCP link
    "mock_latency_s": float(os.getenv("MODBUS_MOCK_LATENCY_S", "0.01")),
}

# ==================== COMMAND QUEUE ====================

QUEUE_CONFIG = {
    "transaction_timeout_s": float(os.getenv("QUEUE_TRANSACTION_TIMEOUT_S", "5.0")),
    "size_warning_threshold": 100,  # Backlog warning
    "slow_batch_ms": 5000,          # Drain pass slower than this is logged
}

# ==================== POLLING ====================

POLLING_CONFIG = {
    "default_interval_ms": int(os.getenv("POLLING_INTERVAL_MS", "20000")),
    "min_interval_ms": 1000,
    "enabled": _env_bool("POLLING_ENABLED", "true"),
    "device_cache_ttl_s": 5 * 60,
    "max_retry_attempts": 1,
    "retry_delay_ms": 100,
    "memory_cleanup_interval_s": 10 * 60,
    "poll_system_ports": _env_bool("POLL_SYSTEM_PORTS", "true"),
    "response_time_alpha": 0.1,  # EMA weight for average response time
}

# ==================== CONTROL ====================

CONTROL_CONFIG = {
    "batch_strategy": os.getenv("CONTROL_BATCH_STRATEGY", "sequential"),  # sequential | parallel
    "max_concurrency": 3,
}

# ==================== PERSISTENCE ====================

PERSISTENCE_CONFIG = {
    "save_max_retries": 2,
    "save_retry_delay_ms": 100,
}

# ==================== API ====================

API_CONFIG: Dict = {
    "rest_port": int(os.getenv("REST_PORT", "9000")),
    "cors_origins": os.getenv("CORS_ORIGINS", "*").split(","),
}

# ==================== LOGGING CONFIGURATION ====================

LOGGING_CONFIG = {
    "level": os.getenv("LOG_LEVEL", "INFO"),
    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
}
