"""Live protocol snapshots.

Loads current pool, reserve, oracle and backstop state through a
ProtocolStateClient and turns it into a WalletSnapshot, with TTL caching
and de-duplication of identical concurrent requests.
"""

from yieldlens.live.aggregator import SnapshotAggregator
from yieldlens.live.cache import SnapshotCaches, TTLCache
from yieldlens.live.client import ProtocolStateClient
from yieldlens.live.models import (
    BackstopPosition,
    PoolEstimate,
    Q4WChunk,
    ReservePosition,
    SnapshotFailure,
    WalletSnapshot,
)
from yieldlens.live.singleflight import SingleFlight, snapshot_key

__all__ = [
    "BackstopPosition",
    "PoolEstimate",
    "ProtocolStateClient",
    "Q4WChunk",
    "ReservePosition",
    "SingleFlight",
    "SnapshotAggregator",
    "SnapshotCaches",
    "SnapshotFailure",
    "TTLCache",
    "WalletSnapshot",
    "snapshot_key",
]
