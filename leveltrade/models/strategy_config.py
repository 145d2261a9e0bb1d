"""Strategy configuration dataclasses.

One ``StrategyConfig`` describes one level-retest strategy: which
instrument produces signals, which side of the market it trades, how an
entry is placed and how the resulting position is managed.
"""

import json
import logging
import pathlib
from dataclasses import dataclass, field, fields
from typing import Any

from leveltrade.errors import ConfigurationError
from leveltrade.strategy.sr_zones import SRSettings

logger = logging.getLogger("leveltrade")

DIRECTIONS = ("support", "resistance", "both")
ENTRY_POLICIES = ("candle_close", "candle_low", "option_band")
CONFIRMATION_SOURCES = ("history", "aggregated")
INDICATOR_CADENCES = ("candle", "tick")
TARGET_MODES = ("levels", "atr", "percent")


@dataclass(frozen=True)
class ATRSettings:
    enabled: bool = True
    period: int = 14
    stop_multiple: float = 1.0  # initial stop distance below entry


@dataclass(frozen=True)
class RSISettings:
    enabled: bool = False
    period: int = 14
    overbought: float = 70.0  # long entries rejected at or above
    oversold: float = 30.0  # short entries rejected at or below


@dataclass(frozen=True)
class BollingerSettings:
    period: int = 20
    k: float = 2.0


@dataclass(frozen=True)
class TrailingSettings:
    enabled: bool = True
    activation_multiple: float = 1.0  # × ATR of profit before trailing starts
    trail_multiple: float = 0.5  # × ATR behind the best price


@dataclass(frozen=True)
class TargetSettings:
    """How stop-loss and targets are derived for a new entry.

    ``levels`` uses the next levels beyond entry and falls back to ATR
    multiples; ``atr`` uses ATR multiples only; ``percent`` ignores ATR.
    Without an ATR reading every mode falls back to the percentage rule.
    """

    mode: str = "levels"
    t1_atr_multiple: float = 2.0
    t2_atr_multiple: float = 5.0
    stop_pct: float = 20.0
    reward_ratio: float = 5.0
    scale_out: bool = True  # two targets with a partial exit at the first


_NESTED = {
    "sr": SRSettings,
    "atr": ATRSettings,
    "rsi": RSISettings,
    "bollinger": BollingerSettings,
    "trailing": TrailingSettings,
    "targets": TargetSettings,
}


@dataclass(frozen=True)
class StrategyConfig:
    """Configuration for a single level-retest strategy.

    ``token``/``exchange`` identify the signal instrument (the underlying
    for option-mapped strategies).  ``entry_policy`` decides what is
    traded once a retest is confirmed:

    - ``candle_close``: the signal instrument, immediately at the
      confirming candle's close.
    - ``candle_low``: the signal instrument, armed at the confirming
      candle's low (high for shorts).
    - ``option_band``: the ATM option (CE on support, PE on resistance),
      armed at the option's own lower Bollinger Band.
    """

    name: str
    underlying: str
    token: str
    exchange: str = "NSE"
    lot_size: int = 1
    direction: str = "both"  # "support", "resistance" or "both"
    entry_policy: str = "candle_close"
    candle_interval_minutes: int = 15
    proximity_pct: float = 0.2  # touch band, percent of price
    level_cooldown_minutes: int = 15
    lots: int = 1
    history_days: int = 5
    max_candles: int = 100
    confirmation_source: str = "history"  # "history" or "aggregated"
    confirmation_timeout_seconds: float = 30.0
    indicator_cadence: str = "candle"  # "candle" or "tick"
    pending_expiry_minutes: int = 30
    allow_short: bool = False  # resistance retests on the signal instrument
    expiry: str = "nearest"  # "nearest", "next", "monthly" or YYYY-MM-DD
    strike_step: float = 50.0
    sr: SRSettings = field(default_factory=SRSettings)
    atr: ATRSettings = field(default_factory=ATRSettings)
    rsi: RSISettings = field(default_factory=RSISettings)
    bollinger: BollingerSettings = field(default_factory=BollingerSettings)
    trailing: TrailingSettings = field(default_factory=TrailingSettings)
    targets: TargetSettings = field(default_factory=TargetSettings)
    enabled: bool = True

    @property
    def is_option_mapped(self) -> bool:
        return self.entry_policy == "option_band"

    def watches(self, kind: str) -> bool:
        """True when levels of *kind* produce signals for this strategy."""
        return self.direction == "both" or self.direction == kind

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StrategyConfig":
        """Build a config from a JSON object, validating every field.

        Raises ``ConfigurationError`` naming the strategy on any problem.
        """
        if not isinstance(raw, dict):
            raise ConfigurationError("Strategy entry must be an object")
        name = str(raw.get("name", ""))

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown field(s) for strategy '{name}': {', '.join(unknown)}",
                strategy=name,
            )
        missing = [k for k in ("name", "underlying", "token") if not raw.get(k)]
        if missing:
            raise ConfigurationError(
                f"Strategy '{name}' is missing required field(s): {', '.join(missing)}",
                strategy=name,
            )

        kwargs = dict(raw)
        kwargs["token"] = str(raw["token"])
        for key, settings_cls in _NESTED.items():
            if key in kwargs:
                kwargs[key] = _build_nested(name, key, settings_cls, kwargs[key])

        try:
            config = cls(**kwargs)
        except TypeError as exc:
            raise ConfigurationError(f"Strategy '{name}': {exc}", strategy=name) from exc

        config.validate()
        return config

    def validate(self) -> None:
        """Raise ``ConfigurationError`` when a field has the wrong type or is out of range."""
        problems = _type_problems("", self)
        for key in _NESTED:
            problems += _type_problems(f"{key}.", getattr(self, key))
        if problems:
            raise ConfigurationError(
                f"Strategy '{self.name}': " + "; ".join(problems),
                strategy=self.name,
            )

        problems = []
        if self.direction not in DIRECTIONS:
            problems.append(f"direction must be one of {DIRECTIONS}")
        if self.entry_policy not in ENTRY_POLICIES:
            problems.append(f"entry_policy must be one of {ENTRY_POLICIES}")
        if self.confirmation_source not in CONFIRMATION_SOURCES:
            problems.append(f"confirmation_source must be one of {CONFIRMATION_SOURCES}")
        if self.indicator_cadence not in INDICATOR_CADENCES:
            problems.append(f"indicator_cadence must be one of {INDICATOR_CADENCES}")
        if self.targets.mode not in TARGET_MODES:
            problems.append(f"targets.mode must be one of {TARGET_MODES}")
        if self.candle_interval_minutes <= 0:
            problems.append("candle_interval_minutes must be positive")
        if self.proximity_pct <= 0:
            problems.append("proximity_pct must be positive")
        if self.lots <= 0 or self.lot_size <= 0:
            problems.append("lots and lot_size must be positive")
        if self.is_option_mapped and self.strike_step <= 0:
            problems.append("strike_step must be positive for option_band")
        if self.sr.min_reactions < 1:
            problems.append("sr.min_reactions must be at least 1")
        if problems:
            raise ConfigurationError(
                f"Strategy '{self.name}': " + "; ".join(problems),
                strategy=self.name,
            )


def _type_problems(prefix: str, settings: Any) -> list[str]:
    problems = []
    for f in fields(settings):
        value = getattr(settings, f.name)
        if f.type is bool:
            ok = isinstance(value, bool)
        elif f.type is int:
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif f.type is float:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif f.type is str:
            ok = isinstance(value, str)
        else:
            continue
        if not ok:
            problems.append(f"{prefix}{f.name} must be {f.type.__name__}, got {value!r}")
    return problems


def _build_nested(name: str, key: str, settings_cls: type, value: Any):
    if not isinstance(value, dict):
        raise ConfigurationError(
            f"Strategy '{name}': '{key}' must be an object", strategy=name
        )
    try:
        return settings_cls(**value)
    except TypeError as exc:
        raise ConfigurationError(
            f"Strategy '{name}': invalid '{key}' settings ({exc})", strategy=name
        ) from exc


def load_strategies(path: str | pathlib.Path) -> list[StrategyConfig]:
    """Read ``{"strategies": [...]}`` from *path*.

    Invalid entries are logged and skipped so one bad strategy does not
    take its siblings down.  A missing or unreadable file raises
    ``ConfigurationError``.
    """
    path = pathlib.Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Strategies file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Strategies file {path} is not valid JSON: {exc}") from exc

    entries = data.get("strategies", []) if isinstance(data, dict) else []
    configs: list[StrategyConfig] = []
    for entry in entries:
        try:
            configs.append(StrategyConfig.from_dict(entry))
        except ConfigurationError as exc:
            logger.error("Skipping strategy: %s", exc)
    return configs
