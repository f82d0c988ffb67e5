"""Collectors for network state consumed by the evaluator."""

from netcurfew.collectors.neighbors import NeighborCollector, NeighborConfig, OnlineDevices

__all__ = [
    "NeighborCollector",
    "NeighborConfig",
    "OnlineDevices",
]
