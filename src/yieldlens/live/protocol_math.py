"""Fixed-point conversions and emission estimates matching the protocol's own math.

Supply rounds down and liabilities round up when converting b-/d-tokens
to underlying, as the protocol does, so live balances agree with the
chain to the last stroop.
"""

from decimal import Decimal

from yieldlens.live.state import BackstopTokenState, EmissionProgram, UserEmission

ZERO = Decimal("0")
SECONDS_PER_YEAR = 31_536_000
EMISSION_DECIMALS = 7

# backstop LP token weights
BLND_WEIGHT = Decimal("0.8")
USDC_WEIGHT = Decimal("0.2")


def to_decimal(raw: int, decimals: int) -> Decimal:
    """Scale a raw fixed-point integer to a Decimal."""
    return Decimal(raw).scaleb(-decimals)


def btokens_to_underlying(btokens: int, b_rate: int, rate_decimals: int = 12) -> int:
    """floor(btokens * b_rate / 10^rate_decimals)."""
    return (btokens * b_rate) // 10**rate_decimals


def dtokens_to_underlying(dtokens: int, d_rate: int, rate_decimals: int = 12) -> int:
    """ceil(dtokens * d_rate / 10^rate_decimals)."""
    return -((-dtokens * d_rate) // 10**rate_decimals)


def shares_to_lp_tokens(shares: int, pool_shares: int, pool_tokens: int) -> int:
    """Convert backstop shares to LP tokens at the pool's current share ratio."""
    if pool_shares <= 0:
        return 0
    return (shares * pool_tokens) // pool_shares


def index_at(program: EmissionProgram, total_tokens: Decimal, now: int) -> Decimal:
    """Advance a program's index to ``now``, never past its expiration."""
    elapsed = min(now, program.expiration) - program.last_time
    if elapsed <= 0 or total_tokens <= 0:
        return program.index
    eps = to_decimal(program.eps, EMISSION_DECIMALS)
    return program.index + eps * elapsed / total_tokens


def claimable_emissions(
    program: EmissionProgram | None,
    checkpoint: UserEmission | None,
    user_tokens: Decimal,
    total_tokens: Decimal,
    now: int,
) -> Decimal:
    """accrued + user_tokens * (index_now - user_index), in emission tokens."""
    accrued = to_decimal(checkpoint.accrued, EMISSION_DECIMALS) if checkpoint else ZERO
    if program is None or user_tokens <= 0:
        return accrued
    user_index = checkpoint.index if checkpoint else ZERO
    current = index_at(program, total_tokens, now)
    if current <= user_index:
        return accrued
    return accrued + user_tokens * (current - user_index)


def emissions_per_year_per_token(
    program: EmissionProgram | None, total_tokens: Decimal, now: int
) -> Decimal:
    """Emission tokens paid per position token per year; zero once the program expired."""
    if program is None or total_tokens <= 0 or now >= program.expiration:
        return ZERO
    return to_decimal(program.eps, EMISSION_DECIMALS) * SECONDS_PER_YEAR / total_tokens


def usdc_per_blnd(token: BackstopTokenState) -> Decimal | None:
    """BLND spot price in USDC from the 80/20 pool balances."""
    blnd = to_decimal(token.blnd, token.decimals)
    usdc = to_decimal(token.usdc, token.decimals)
    if blnd <= 0 or usdc <= 0:
        return None
    return (usdc / USDC_WEIGHT) / (blnd / BLND_WEIGHT)


def lp_token_price(token: BackstopTokenState) -> Decimal | None:
    """USD value of one LP token: the USDC side is 20% of pool value."""
    usdc = to_decimal(token.usdc, token.decimals)
    supply = to_decimal(token.shares, token.decimals)
    if usdc <= 0 or supply <= 0:
        return None
    return (usdc / USDC_WEIGHT) / supply


def blnd_per_lp_token(token: BackstopTokenState) -> Decimal:
    supply = to_decimal(token.shares, token.decimals)
    if supply <= 0:
        return ZERO
    return to_decimal(token.blnd, token.decimals) / supply
