"""
Shelter Master
==============

Polling and control engine for unattended shelter DDC controllers.

Components:
    - mapping:  port mapping tables and address resolver
    - transport: Modbus TCP and simulated DDC transports
    - command_queue: priority queue serializing all link I/O
    - polling:  periodic scheduler with retry, caching and health tracking
    - control:  on-demand command executor with command log
    - results:  result-to-data-model mapper
"""

__version__ = "1.0.0"
