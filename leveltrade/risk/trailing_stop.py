"""Trailing stop — ATR-based progressive SL management for open positions.

Rules:
  - Once profit per unit reaches ``activation_multiple × ATR`` the trail
    activates at ``price ∓ trail_multiple × ATR``.
  - While active the trail follows the best price seen and never loosens.
"""

from typing import Optional


class TrailingStop:
    """Tracks the trailing stop for a single position.

    Args:
        entry_price: Original entry price.
        atr: ATR at entry, fixed for the life of the position.
        side: ``"long"`` or ``"short"``.
        activation_multiple: ATR multiples of profit before trailing starts.
        trail_multiple: ATR multiples the stop trails behind the best price.
    """

    def __init__(
        self,
        entry_price: float,
        atr: float,
        side: str,
        activation_multiple: float = 1.0,
        trail_multiple: float = 0.5,
        active: bool = False,
        extreme_price: Optional[float] = None,
        stop_price: Optional[float] = None,
    ) -> None:
        if side not in ("long", "short"):
            raise ValueError(f"side must be 'long' or 'short', got '{side}'")
        self.entry_price = entry_price
        self.atr = atr
        self.side = side
        self.activation_multiple = activation_multiple
        self.trail_multiple = trail_multiple
        self.active = active
        self.extreme_price = extreme_price
        self.stop_price = stop_price

    def update(self, current_price: float) -> Optional[float]:
        """Evaluate the current price and return the trail if it moved.

        Returns:
            New trailing stop when it activates or ratchets, ``None`` if
            nothing changed.
        """
        if self.atr <= 0:
            return None

        distance = self.trail_multiple * self.atr

        if self.side == "long":
            if not self.active:
                if current_price - self.entry_price < self.activation_multiple * self.atr:
                    return None
                self.active = True
                self.extreme_price = current_price
                self.stop_price = current_price - distance
                return self.stop_price

            if current_price > self.extreme_price:
                self.extreme_price = current_price
            candidate = self.extreme_price - distance
            if candidate > self.stop_price:
                self.stop_price = candidate
                return self.stop_price
            return None

        if not self.active:
            if self.entry_price - current_price < self.activation_multiple * self.atr:
                return None
            self.active = True
            self.extreme_price = current_price
            self.stop_price = current_price + distance
            return self.stop_price

        if current_price < self.extreme_price:
            self.extreme_price = current_price
        candidate = self.extreme_price + distance
        if candidate < self.stop_price:
            self.stop_price = candidate
            return self.stop_price
        return None

    def to_dict(self) -> dict:
        return {
            "atr": self.atr,
            "activation_multiple": self.activation_multiple,
            "trail_multiple": self.trail_multiple,
            "active": self.active,
            "extreme_price": self.extreme_price,
            "stop_price": self.stop_price,
        }
