from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FeeSchedule:
    entry_fee: float
    exit_fee: float

    @property
    def net_factor(self) -> float:
        return (1.0 - self.entry_fee) * (1.0 - self.exit_fee)


@dataclass(frozen=True)
class Fill:
    amount: float
    price: float
    shares: float
    commission: float


def profit_multiplier(price: float, fees: FeeSchedule) -> float:
    """Net return per dollar staked if the outcome resolves to $1."""
    if price <= 0:
        return float("-inf")
    return fees.net_factor / price - 1.0


def compute_stake(
    price: float,
    *,
    prior_losses: float,
    target_profit: float,
    fees: FeeSchedule,
) -> float | None:
    """Stake that recovers ``prior_losses`` and adds ``target_profit`` on a win.

    Returns None when the price is too high for any stake to come out ahead.
    """
    multiplier = profit_multiplier(price, fees)
    if multiplier <= 0:
        return None

    required = max(0.0, prior_losses) + max(0.0, target_profit)
    if required <= 0:
        return None
    return required / multiplier


def simulate_buy(stake: float, price: float, fees: FeeSchedule) -> Fill:
    if stake <= 0 or price <= 0:
        raise ValueError("stake and price must be positive")

    commission = stake * fees.entry_fee
    shares = (stake - commission) / price
    return Fill(amount=stake, price=price, shares=shares, commission=commission)


def redemption_value(shares: float, fees: FeeSchedule) -> tuple[float, float]:
    """Net payout and exit fee for shares redeemed at $1."""
    gross = max(0.0, shares)
    exit_fee = gross * fees.exit_fee
    return gross - exit_fee, exit_fee


def sell_proceeds(shares: float, price: float, fees: FeeSchedule) -> tuple[float, float]:
    gross = max(0.0, shares) * max(0.0, price)
    exit_fee = gross * fees.exit_fee
    return gross - exit_fee, exit_fee
