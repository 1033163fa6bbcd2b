"""
Trade Deduplication

Fuzzy identity for imported trades. Two trades are considered the same when
their entry price, close price and 5-minute close bucket all match.

This is an approximation, kept as-is on purpose:
- Two distinct trades with identical prices closed inside the same 5-minute
  bucket collapse into one (false positive, the second is skipped).
- A trade whose reported close time lands in a different bucket between two
  import runs is inserted twice (false negative).
- Stored prices are floats, so a key built from a stored document only
  equals one built from exchange strings for prices with at most 15
  significant digits. Longer prices lose digits in storage and the trade is
  imported again.

Exchange trade ids are not used because positions closed through the
settlement flow never stored one.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Set, Tuple, Union

from app.modules.positions.models import Position

# 5 minutes
TIME_BUCKET_MS = 300_000

DedupKey = Tuple[Decimal, Decimal, int]


def _normalize_price(value: Union[Decimal, float, int, str]) -> Decimal:
    # 100, 100.0 and "100.00" must produce the same key
    return Decimal(str(value)).normalize()


def dedup_key(
    entry_price: Union[Decimal, float, int, str],
    close_price: Union[Decimal, float, int, str],
    closed_at: datetime,
) -> DedupKey:
    """
    Build the fuzzy identity key.

    Args:
        entry_price: Entry price
        close_price: Close price
        closed_at: Close timestamp (timezone aware)

    Returns:
        (entry, close, floor(closed_at_ms / 300000))
    """
    if closed_at.tzinfo is None:
        # pymongo returns naive UTC datetimes
        closed_at = closed_at.replace(tzinfo=timezone.utc)
    closed_at_ms = int(closed_at.timestamp() * 1000)
    return (
        _normalize_price(entry_price),
        _normalize_price(close_price),
        closed_at_ms // TIME_BUCKET_MS,
    )


def position_key(position: Position) -> DedupKey:
    return dedup_key(position.entry_price, position.close_price, position.closed_at)


def filter_new_trades(
    candidates: Iterable[Position],
    existing_keys: Iterable[DedupKey],
) -> Tuple[List[Position], List[Position]]:
    """
    Split candidates into (new, skipped).

    A candidate is skipped if its key is already stored, or if an earlier
    candidate of the same batch produced the same key.
    """
    seen: Set[DedupKey] = set(existing_keys)
    new: List[Position] = []
    skipped: List[Position] = []

    for candidate in candidates:
        key = position_key(candidate)
        if key in seen:
            skipped.append(candidate)
            continue
        seen.add(key)
        new.append(candidate)

    return new, skipped
