"""
Universe of tradable symbols, built from exchange reference metadata.

Metadata records use the upstream field names (``NSEID``, ``BSEID``,
``MKTCAP``, ``company``, ``SC_FULLNM``, ``exchange``).  A record qualifies
when it has an NSE or BSE id, a real exchange (anything but ``-``) and a
numeric market cap strictly above the requested minimum (in crores).
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import get_logger
from .errors import ValidationError

logger = get_logger("universe")


@dataclass(frozen=True)
class UniverseEntry:
    symbol_id: str
    display_name: str
    market_cap: float
    exchange: str
    full_name: Optional[str] = None
    nse_id: Optional[str] = None
    bse_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol_id,
            "name": self.display_name,
            "full_name": self.full_name,
            "market_cap": self.market_cap,
            "exchange": self.exchange,
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def entry_from_record(record: Dict[str, Any]) -> Optional[UniverseEntry]:
    """Map one metadata record to an entry, or ``None`` if it is unusable."""
    nse_id = record.get("NSEID") or None
    bse_id = record.get("BSEID") or None
    exchange = record.get("exchange")
    market_cap = record.get("MKTCAP")
    if not (nse_id or bse_id) or not exchange or exchange == "-" or not _is_number(market_cap):
        return None
    symbol_id = str(nse_id or bse_id)
    return UniverseEntry(
        symbol_id=symbol_id,
        display_name=record.get("company") or symbol_id,
        market_cap=float(market_cap),
        exchange=str(exchange),
        full_name=record.get("SC_FULLNM"),
        nse_id=nse_id,
        bse_id=bse_id,
    )


def filter_universe(records: Iterable[Dict[str, Any]], min_market_cap: float) -> List[UniverseEntry]:
    if not _is_number(min_market_cap) or min_market_cap <= 0:
        raise ValidationError("Please provide Market Cap (number in Crs)")
    entries = []
    for record in records:
        entry = entry_from_record(record)
        if entry is not None and entry.market_cap > min_market_cap:
            entries.append(entry)
    return entries


class StaticUniverseProvider:
    """Universe over metadata records already in memory."""

    def __init__(self, records: Iterable[Dict[str, Any]]) -> None:
        self._records = list(records)

    def list(self, min_market_cap: float) -> List[UniverseEntry]:
        return filter_universe(self._records, min_market_cap)


class JsonUniverseProvider:
    """Universe read from a metadata JSON file (a list of records)."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def list(self, min_market_cap: float) -> List[UniverseEntry]:
        with open(self.path, "r", encoding="utf-8") as f:
            records = json.load(f)
        entries = filter_universe(records, min_market_cap)
        logger.info("Loaded %s of %s symbols above cap %s from %s",
                    len(entries), len(records), min_market_cap, self.path)
        return entries
