"""
Stratum Inventory Module

Provides the host/group model, the validated inventory graph and the
INI/YAML inventory parser.
"""

from stratum.inventory.host import Host
from stratum.inventory.group import Group
from stratum.inventory.graph import InventoryGraph, ALL_GROUP, UNGROUPED_GROUP
from stratum.inventory.parser import InventoryParser

__all__ = [
    'Host',
    'Group',
    'InventoryGraph',
    'InventoryParser',
    'ALL_GROUP',
    'UNGROUPED_GROUP',
]
