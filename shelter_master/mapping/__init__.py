"""
Port mapping layer: site tables, typed commands, resolver and its cache.
"""

from shelter_master.mapping.models import (
    TIME_INTEGRATED,
    CommandIntent,
    MappedCommand,
    PlainCommand,
    TimeCompositeCommand,
    TransactionDescriptor,
    ValueType,
)
from shelter_master.mapping.cache import ResolverCache
from shelter_master.mapping.table import SiteMapping, get_available_sites, load_site_mapping
from shelter_master.mapping.resolver import AddressResolver

__all__ = [
    'TIME_INTEGRATED',
    'CommandIntent',
    'MappedCommand',
    'PlainCommand',
    'TimeCompositeCommand',
    'TransactionDescriptor',
    'ValueType',
    'ResolverCache',
    'SiteMapping',
    'get_available_sites',
    'load_site_mapping',
    'AddressResolver',
]
