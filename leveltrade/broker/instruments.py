"""Instrument master — token lookups, option contracts and expiry resolution.

Reads the broker's scrip master JSON (a list of rows with ``token``,
``symbol``, ``name``, ``expiry`` like ``28MAR2024``, ``strike`` in paise,
``lotsize``, ``instrumenttype``, ``exch_seg`` and ``tick_size``).
"""

import json
import logging
import pathlib
import re
from datetime import date, datetime
from typing import Iterable, Optional

import httpx

from leveltrade.strategy.models import Instrument

logger = logging.getLogger("leveltrade")

SCRIP_MASTER_URL = (
    "https://margincalculator.angelbroking.com/OpenAPI_File/files/OpenAPIScripMaster.json"
)

_OPTION_TYPES = {"OPTIDX", "OPTSTK", "OPTFUT", "OPTCUR"}


def normalize_name(name: str) -> str:
    """Upper-case alphanumerics only (``"Nifty 50"`` → ``"NIFTY50"``)."""
    return re.sub(r"[^A-Z0-9]", "", name.upper())


def atm_strike(price: float, strike_step: float) -> float:
    """Strike nearest to *price* on a grid of *strike_step*."""
    if strike_step <= 0:
        raise ValueError(f"strike_step must be positive, got {strike_step}")
    return round(price / strike_step) * strike_step


def _parse_expiry(raw: str) -> Optional[date]:
    raw = (raw or "").strip()
    if not raw:
        return None
    for fmt in ("%d%b%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw.title() if fmt == "%d%b%Y" else raw, fmt).date()
        except ValueError:
            continue
    return None


def instrument_from_row(row: dict) -> Optional[Instrument]:
    """Convert one scrip master row; ``None`` when token or symbol is missing."""
    token = str(row.get("token", "")).strip()
    symbol = str(row.get("symbol", "")).strip()
    if not token or not symbol:
        return None

    exchange = str(row.get("exch_seg", "")).upper()
    inst_type = str(row.get("instrumenttype", "")).upper()
    is_option = inst_type in _OPTION_TYPES and symbol[-2:] in ("CE", "PE")

    tick_size = (float(row.get("tick_size") or 0) or 5.0) / 100.0  # paise → rupees

    strike = None
    if is_option:
        strike = float(row.get("strike") or 0) / 100.0

    try:
        lot_size = int(float(row.get("lotsize") or 1))
    except ValueError:
        lot_size = 1

    return Instrument(
        token=token,
        symbol=symbol,
        exchange=exchange,
        lot_size=max(lot_size, 1),
        tick_size=tick_size,
        kind="option" if is_option else "underlying",
        option_type=symbol[-2:] if is_option else None,
        strike=strike,
        expiry=_parse_expiry(str(row.get("expiry", ""))),
        name=str(row.get("name", "")).strip(),
    )


class ScripMaster:
    """In-memory instrument master.

    Args:
        instruments: Parsed instruments (see :func:`instrument_from_row`).
    """

    def __init__(self, instruments: Iterable[Instrument]) -> None:
        self._by_token: dict[str, Instrument] = {}
        self._options: dict[str, list[Instrument]] = {}
        for inst in instruments:
            self._by_token[inst.token] = inst
            if inst.is_option and inst.expiry is not None:
                self._options.setdefault(normalize_name(inst.name), []).append(inst)

    # ── Loading ──────────────────────────────────────────────────────────

    @classmethod
    def from_rows(cls, rows: Iterable[dict]) -> "ScripMaster":
        parsed = (instrument_from_row(row) for row in rows)
        return cls(inst for inst in parsed if inst is not None)

    @classmethod
    def from_file(cls, path: str | pathlib.Path) -> "ScripMaster":
        data = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
        rows = data if isinstance(data, list) else data.get("data", [])
        master = cls.from_rows(rows)
        logger.info("Loaded %d instruments from %s", len(master), path)
        return master

    @classmethod
    async def load(
        cls,
        path: str | pathlib.Path,
        url: str = SCRIP_MASTER_URL,
        refresh: bool = False,
    ) -> "ScripMaster":
        """Load from *path*, downloading the master first when missing or *refresh*.

        A failed download is tolerated when a local copy exists.
        """
        path = pathlib.Path(path)
        if refresh or not path.exists():
            try:
                await download_scrip_master(url, path)
            except httpx.HTTPError as exc:
                if not path.exists():
                    raise
                logger.warning("Scrip master download failed (%s); using local copy", exc)
        return cls.from_file(path)

    def __len__(self) -> int:
        return len(self._by_token)

    # ── Lookups ──────────────────────────────────────────────────────────

    def get(self, token: str) -> Optional[Instrument]:
        return self._by_token.get(str(token))

    def expiries(self, underlying: str, today: Optional[date] = None) -> list[date]:
        """Sorted option expiries of *underlying* on or after *today*."""
        contracts = self._options.get(normalize_name(underlying), [])
        dates = sorted({c.expiry for c in contracts if c.expiry is not None})
        if today is not None:
            dates = [d for d in dates if d >= today]
        return dates

    def resolve_expiry(
        self, underlying: str, preference: str, today: Optional[date] = None
    ) -> Optional[date]:
        """Pick an expiry for *underlying*.

        ``preference`` is ``nearest`` (first upcoming), ``next`` (second
        upcoming), ``monthly`` (last expiry in the nearest expiry's month)
        or an explicit ``YYYY-MM-DD``.
        """
        upcoming = self.expiries(underlying, today or date.today())
        if not upcoming:
            return None
        pref = preference.strip().lower()
        if pref == "nearest":
            return upcoming[0]
        if pref == "next":
            return upcoming[1] if len(upcoming) > 1 else None
        if pref == "monthly":
            first = upcoming[0]
            same_month = [d for d in upcoming if (d.year, d.month) == (first.year, first.month)]
            return same_month[-1]
        explicit = _parse_expiry(preference)
        if explicit is None:
            raise ValueError(f"Unknown expiry preference '{preference}'")
        return explicit if explicit in upcoming else None

    def find_option(
        self,
        underlying: str,
        strike: float,
        expiry: date,
        option_type: str,
    ) -> Optional[Instrument]:
        """Exact option contract, or ``None`` when the master has none."""
        for inst in self._options.get(normalize_name(underlying), []):
            if (
                inst.expiry == expiry
                and inst.option_type == option_type
                and inst.strike is not None
                and abs(inst.strike - strike) < 1e-6
            ):
                return inst
        return None


async def download_scrip_master(url: str, path: pathlib.Path) -> None:
    """Fetch the scrip master JSON and write it to *path*."""
    logger.info("Downloading scrip master from %s", url)
    async with httpx.AsyncClient() as client:
        resp = await client.get(url, timeout=120.0)
    resp.raise_for_status()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(resp.text, encoding="utf-8")
