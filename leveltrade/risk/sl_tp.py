"""Stop-loss and target calculation — pure math, no I/O.

Level-anchored approach (primary, signal-instrument trades):
    Targets are the next levels beyond entry in the profit direction.
    A missing second level is replaced by the ATR multiple.

ATR approach:
    SL = entry ∓ stop_multiple × ATR, T1/T2 = entry ± t1/t2 multiples × ATR.

Percentage fallback (no ATR reading, or ``mode="percent"``):
    SL = entry ∓ stop_pct %, T1 = 1R, T2 = reward_ratio × R.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from leveltrade.models.strategy_config import ATRSettings, TargetSettings


@dataclass(frozen=True)
class ExitLevels:
    """Computed stop-loss and ordered targets for a trade."""

    stop_loss: float
    targets: tuple[float, ...]
    source: str  # "levels", "atr" or "percent"


def _round(price: float) -> float:
    return round(price, 2)


def calculate_exit_levels(
    entry_price: float,
    side: str,
    atr: Optional[float],
    targets: TargetSettings = TargetSettings(),
    atr_settings: ATRSettings = ATRSettings(),
    levels_beyond: Sequence[float] = (),
) -> ExitLevels:
    """Calculate the initial stop and targets for an entry.

    Args:
        entry_price: Expected fill price.
        side: ``"long"`` or ``"short"``.
        atr: ATR of the traded instrument, or ``None``.
        targets: Target settings of the strategy.
        atr_settings: ATR settings of the strategy.
        levels_beyond: Level prices beyond entry in the profit direction,
            closest first.  Only used in ``levels`` mode.

    Raises:
        ValueError: If *side* is not ``"long"`` or ``"short"``.
    """
    if side not in ("long", "short"):
        raise ValueError(f"side must be 'long' or 'short', got '{side}'")
    sign = 1.0 if side == "long" else -1.0

    use_atr = (
        atr is not None
        and atr > 0
        and atr_settings.enabled
        and targets.mode != "percent"
    )

    if not use_atr:
        risk = entry_price * targets.stop_pct / 100.0
        stop = entry_price - sign * risk
        t1 = entry_price + sign * risk
        t2 = entry_price + sign * targets.reward_ratio * risk
        return _finish(stop, t1, t2, targets.scale_out, "percent")

    stop = entry_price - sign * atr_settings.stop_multiple * atr
    atr_t1 = entry_price + sign * targets.t1_atr_multiple * atr
    atr_t2 = entry_price + sign * targets.t2_atr_multiple * atr

    if targets.mode == "levels":
        beyond = [p for p in levels_beyond if (p - entry_price) * sign > 0]
        if beyond:
            t1 = beyond[0]
            t2 = beyond[1] if len(beyond) > 1 else atr_t2
            if (t2 - t1) * sign <= 0:
                t2 = atr_t2 if (atr_t2 - t1) * sign > 0 else t1
            return _finish(stop, t1, t2, targets.scale_out, "levels")

    return _finish(stop, atr_t1, atr_t2, targets.scale_out, "atr")


def _finish(stop: float, t1: float, t2: float, scale_out: bool, source: str) -> ExitLevels:
    if scale_out and t2 != t1:
        ordered = (_round(t1), _round(t2))
    else:
        ordered = (_round(t1),)
    return ExitLevels(stop_loss=_round(stop), targets=ordered, source=source)
