from __future__ import annotations

from datetime import datetime

from .models import (
    Color,
    Side,
    StabilityResult,
    ValidationRun,
    ValidationSample,
    ValidationState,
    ensure_utc,
)
from .stability import WINDOW_SIZE, OrderBookAnalysis, check_stability

SAMPLE_INTERVAL_SECONDS = 10
DECISION_WINDOW_SECONDS = 60
STREAK_LENGTH = WINDOW_SIZE
HISTORY_LIMIT = 50
DISPLAY_SYMBOLS = 20


def monitored_side(signal_color: Color) -> Side:
    """Side whose price falls while the signal holds.

    A red signal is corroborated by a cheap UP outcome, a green one by a
    cheap DOWN outcome.
    """
    return Side.UP if signal_color is Color.RED else Side.DOWN


def due_for_sample(run: ValidationRun, now: datetime) -> bool:
    if run.last_check_at is None:
        return True
    return (now - ensure_utc(run.last_check_at)).total_seconds() >= SAMPLE_INTERVAL_SECONDS


def record_sample(
    run: ValidationRun,
    *,
    price: float,
    side: Side,
    analysis: OrderBookAnalysis | None,
    now: datetime,
) -> StabilityResult:
    sample = ValidationSample(
        timestamp=now,
        price=price,
        matches=False,
        side=side,
        imbalance=analysis.imbalance if analysis else None,
        bids_total=analysis.bids_total if analysis else None,
        asks_total=analysis.asks_total if analysis else None,
    )
    result = check_stability([*run.history, sample])
    sample.matches = result.stable

    run.history.append(sample)
    if len(run.history) > HISTORY_LIMIT:
        run.history = run.history[-HISTORY_LIMIT:]
    run.last_check_at = now
    run.last_result = result
    return result


def streak_complete(run: ValidationRun) -> bool:
    if len(run.history) < STREAK_LENGTH:
        return False
    return all(sample.matches for sample in run.history[-STREAK_LENGTH:])


def decide(run: ValidationRun, time_to_deadline: float | None) -> ValidationState:
    complete = streak_complete(run)

    if time_to_deadline is not None and time_to_deadline <= DECISION_WINDOW_SECONDS:
        return ValidationState.VALIDATED if complete else ValidationState.REJECTED

    if len(run.history) < STREAK_LENGTH:
        return ValidationState.VALIDATING
    if complete:
        return ValidationState.VALIDATED
    if run.last_result is not None and not run.last_result.stable:
        return ValidationState.REJECTED
    return ValidationState.VALIDATING


def final_reason(run: ValidationRun, state: ValidationState) -> str:
    if state is ValidationState.VALIDATED:
        return run.last_result.reason if run.last_result else "market stable"
    if run.last_result is not None and run.last_result.stable and len(run.history) >= STREAK_LENGTH:
        matched = sum(1 for sample in run.history[-STREAK_LENGTH:] if sample.matches)
        return f"only {matched} of {STREAK_LENGTH} checks stable"
    if run.last_result is not None:
        return run.last_result.reason
    return "no stable checks before the deadline"


def _symbols(run: ValidationRun) -> str:
    return "".join(sample.symbol for sample in run.history)[-DISPLAY_SYMBOLS:]


def _price_change(run: ValidationRun) -> str:
    if len(run.history) < 2 or run.history[0].price <= 0:
        return ""
    first = run.history[0].price
    last = run.history[-1].price
    return f" ({(last - first) / first * 100:+.1f}%)"


def render_progress(run: ValidationRun, signal_color: Color) -> str:
    if not run.history:
        return f'Checking signal "{signal_color.emoji}":'

    last = run.history[-1]
    book = f" | OB: {last.imbalance * 100:+.1f}%" if last.imbalance is not None else ""
    status = "✅ reliable" if last.matches else "⚠️ unreliable"
    return (
        f'Checking signal "{signal_color.emoji}": {_symbols(run)} | '
        f"{last.side.value.upper()} ${last.price:.3f}{_price_change(run)}{book} | {status}"
    )


def render_final(run: ValidationRun, signal_color: Color, state: ValidationState, outcome: str) -> str:
    return (
        f'Checking signal "{signal_color.emoji}": {_symbols(run)} {outcome}: '
        f"{final_reason(run, state)}{_price_change(run)}"
    )
