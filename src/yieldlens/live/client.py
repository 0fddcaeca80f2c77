"""Abstract live protocol state source.

Defines the contract the snapshot aggregator depends on. Chain access
(RPC, contract calls) stays isolated in concrete implementations.
"""

from abc import ABC, abstractmethod

from yieldlens.live.state import (
    BackstopPoolState,
    BackstopTokenState,
    PoolState,
    TokenMetadata,
    UserBackstopState,
    UserPositions,
)


class ProtocolStateClient(ABC):
    """Abstract base class for live protocol state sources."""

    @abstractmethod
    async def load_pool(self, pool_id: str) -> PoolState:
        """Load pool metadata, reserves, oracle and backstop configuration."""
        ...

    @abstractmethod
    async def load_user_positions(self, pool: PoolState, wallet: str) -> UserPositions:
        """Load the wallet's b-token/d-token balances and emission checkpoints."""
        ...

    @abstractmethod
    async def load_token_metadata(self, asset_id: str) -> TokenMetadata:
        ...

    @abstractmethod
    async def get_oracle_decimals(self, oracle_id: str) -> int | None:
        """Return the oracle's price decimals, or None if it does not report them."""
        ...

    @abstractmethod
    async def get_oracle_price(self, oracle_id: str, asset_id: str) -> int | None:
        """Return the raw oracle price for an asset, or None if unpriced."""
        ...

    @abstractmethod
    async def load_backstop_token(self, backstop_id: str) -> BackstopTokenState:
        ...

    @abstractmethod
    async def load_backstop_pool(self, backstop_id: str, pool_id: str) -> BackstopPoolState:
        ...

    @abstractmethod
    async def load_user_backstop(
        self, backstop_id: str, pool_id: str, wallet: str
    ) -> UserBackstopState:
        """Load the wallet's backstop shares and queued withdrawals for one pool."""
        ...
