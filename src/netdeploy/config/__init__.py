"""Inventory and pipeline settings."""
from .inventory import DeviceInventory
from .settings import PipelineSettings, PolicyRule, CriticalityRule

__all__ = ["DeviceInventory", "PipelineSettings", "PolicyRule", "CriticalityRule"]
