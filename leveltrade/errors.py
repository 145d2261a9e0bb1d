"""LevelTrade error taxonomy."""


class LevelTradeError(Exception):
    """Base class for errors raised by the trading core."""


class DataUnavailable(LevelTradeError):
    """Historical data request returned nothing usable.

    Raised by history clients instead of leaking transport errors.
    """

    def __init__(self, message: str, symbol: str = "") -> None:
        super().__init__(message)
        self.symbol = symbol


class ConfigurationError(LevelTradeError):
    """A strategy or instrument mapping is missing or invalid.

    Fatal for the strategy being initialised only.
    """

    def __init__(self, message: str, strategy: str = "") -> None:
        super().__init__(message)
        self.strategy = strategy


class EntryRejected(LevelTradeError):
    """A confirmed signal could not be turned into an entry.

    ``reason`` is the human-readable text sent to the notification channel.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
