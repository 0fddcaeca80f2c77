"""Live protocol state as returned by a ProtocolStateClient.

Values are raw fixed-point integers exactly as the protocol stores them:
token amounts in the token's smallest unit, b_rate/d_rate with 12
decimals, collateral/liability factors and the backstop take rate with 7.
Published APYs are fractions (0.05 == 5%).
"""

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class EmissionProgram:
    """Emission schedule of one reserve side or one backstop.

    ``index`` is the cumulative emission-tokens-per-position-token as of
    ``last_time``.
    """

    eps: int  # emission-token stroops per second
    expiration: int  # unix seconds
    index: Decimal = Decimal("0")
    last_time: int = 0


@dataclass(frozen=True)
class UserEmission:
    """A user's checkpoint against one emission program."""

    index: Decimal = Decimal("0")
    accrued: int = 0  # emission-token stroops not yet claimed


@dataclass(frozen=True)
class ReserveState:
    asset_id: str
    decimals: int = 7
    c_factor: int = 0
    l_factor: int = 0
    b_rate: int = 10**12
    d_rate: int = 10**12
    b_supply: int = 0  # total b-tokens
    d_supply: int = 0  # total d-tokens
    supply_apy: Decimal = Decimal("0")
    borrow_apy: Decimal = Decimal("0")
    supply_emissions: EmissionProgram | None = None
    borrow_emissions: EmissionProgram | None = None


@dataclass(frozen=True)
class PoolState:
    pool_id: str
    name: str
    oracle_id: str | None
    backstop_id: str | None
    backstop_rate: int = 0
    reserves: dict[str, ReserveState] = field(default_factory=dict)


@dataclass(frozen=True)
class UserPositions:
    """A user's raw b-token/d-token balances in one pool, keyed by asset id."""

    supply: dict[str, int] = field(default_factory=dict)
    collateral: dict[str, int] = field(default_factory=dict)
    liabilities: dict[str, int] = field(default_factory=dict)
    supply_emissions: dict[str, UserEmission] = field(default_factory=dict)
    borrow_emissions: dict[str, UserEmission] = field(default_factory=dict)

    def touches(self, asset_id: str) -> bool:
        return bool(
            self.supply.get(asset_id) or self.collateral.get(asset_id) or self.liabilities.get(asset_id)
        )


@dataclass(frozen=True)
class TokenMetadata:
    asset_id: str
    symbol: str
    name: str | None = None
    decimals: int = 7


@dataclass(frozen=True)
class BackstopTokenState:
    """Composition of the 80/20 BLND/USDC backstop LP token."""

    blnd: int
    usdc: int
    shares: int  # LP token supply
    decimals: int = 7


@dataclass(frozen=True)
class BackstopPoolState:
    pool_id: str
    shares: int
    tokens: int  # LP tokens held for the pool
    q4w_shares: int = 0
    emissions: EmissionProgram | None = None


@dataclass(frozen=True)
class Q4WEntry:
    amount: int  # shares
    expiration: int  # unix seconds


@dataclass(frozen=True)
class UserBackstopState:
    shares: int = 0
    q4w: list[Q4WEntry] = field(default_factory=list)
    q4w_total: int = 0  # aggregate queued shares as reported by the protocol
    emission: UserEmission | None = None
