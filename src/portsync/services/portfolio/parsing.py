"""Coercion of loosely-typed log records into portfolio models.

The transaction store hands over plain mappings written by the front end
(camelCase keys, numbers as strings with either decimal separator,
timestamps as ISO strings or epoch milliseconds). Nothing in here raises
on bad data: numbers fall back to zero and records that cannot identify
their holding are skipped with a warning.
"""

import math
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from portsync.services.portfolio.models import AssetType, PriceQuote, Transaction, TransactionType
from portsync.system import LoggerFactory

logger = LoggerFactory.get_logger()

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Epoch values above this are milliseconds (year 5138 in seconds)
_EPOCH_MS_THRESHOLD = 100_000_000_000

_WHITESPACE = re.compile(r"\s+")


def normalize_number_input(text: str) -> str:
    """
    Normalize a user-typed number to dot-decimal notation.

    Accepts both comma and dot as decimal separator:
    - "1.234,5" and "1,234.5" → both separators present, commas dropped
    - "1,234" → a single comma followed by exactly three digits is a
      thousands separator → "1234"
    - "0,25" → otherwise the comma is the decimal separator → "0.25"

    Examples:
        >>> normalize_number_input("1 500,75")
        '1500.75'
    """
    normalized = _WHITESPACE.sub("", text)

    if "." in normalized and "," in normalized:
        return normalized.replace(",", "")

    if "," in normalized:
        comma_index = normalized.index(",")
        digits_after = len(normalized) - comma_index - 1
        if digits_after == 3 and comma_index > 0:
            return normalized.replace(",", "", 1)
        return normalized.replace(",", ".", 1)

    return normalized


def to_decimal(value: Any) -> Decimal:
    """
    Coerce anything to a finite Decimal, falling back to zero.

    Args:
        value: Decimal, int, float, numeric string or anything else

    Returns:
        Finite Decimal (``Decimal("0")`` when unparseable, NaN or infinite)
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")

    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, int):
            result = Decimal(value)
        elif isinstance(value, float):
            if not math.isfinite(value):
                return Decimal("0")
            result = Decimal(str(value))
        elif isinstance(value, str):
            text = normalize_number_input(value)
            if not text:
                return Decimal("0")
            result = Decimal(text)
        else:
            return Decimal("0")
    except (InvalidOperation, ValueError):
        return Decimal("0")

    if not result.is_finite():
        return Decimal("0")
    return result


def to_optional_decimal(value: Any) -> Decimal | None:
    """Like to_decimal, but None and unparseable values stay None."""
    if value is None or isinstance(value, bool):
        return None
    result = to_decimal(value)
    if result == 0 and not _looks_like_zero(value):
        return None
    return result


def _looks_like_zero(value: Any) -> bool:
    if isinstance(value, (int, float, Decimal)):
        return value == 0
    if isinstance(value, str):
        return normalize_number_input(value) in {"0", "0.0", "0.00", "-0"}
    return False


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a log timestamp into an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), dates, epoch seconds or
    milliseconds, ISO-8601 strings (with or without "Z"), and objects
    exposing ``to_datetime()`` (document-store timestamp types).

    Returns:
        UTC datetime, or None when the value cannot be interpreted
    """
    if value is None or isinstance(value, bool):
        return None

    if hasattr(value, "to_datetime") and not isinstance(value, datetime):
        try:
            value = value.to_datetime()
        except Exception:
            return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float, Decimal)):
        seconds = float(value)
        if not math.isfinite(seconds):
            return None
        if abs(seconds) >= _EPOCH_MS_THRESHOLD:
            seconds /= 1000
        try:
            dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    """Value of the first key present with a non-empty value."""
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _derive_gold_symbol(record: Mapping[str, Any]) -> str | None:
    """GOLD-DIGITAL for digital savings, GOLD-<BRAND> for physical bars."""
    subtype = _text(record.get("subtype"))
    brand = _text(record.get("brand"))
    if subtype and subtype.lower() == "digital":
        return "GOLD-DIGITAL"
    if brand:
        return f"GOLD-{brand.upper()}"
    return None


def parse_transaction(record: Transaction | Mapping[str, Any]) -> Transaction | None:
    """
    Build a Transaction from a log record.

    Args:
        record: Transaction model (returned as-is) or raw mapping

    Returns:
        Transaction, or None when the record is skipped
    """
    if isinstance(record, Transaction):
        return record
    if not isinstance(record, Mapping):
        logger.warning("portfolio.transaction_skipped", reason="not_a_mapping", record_type=type(record).__name__)
        return None

    record_id = _text(_first(record, "id", "transactionId", "transaction_id"))

    try:
        asset_type = AssetType.coerce(_first(record, "assetType", "asset_type") or "")
    except ValueError:
        logger.warning(
            "portfolio.transaction_skipped",
            reason="unknown_asset_type",
            transaction_id=record_id,
            asset_type=record.get("assetType", record.get("asset_type")),
        )
        return None

    try:
        tx_type = TransactionType(str(record.get("type", "")).strip().lower())
    except ValueError:
        logger.warning(
            "portfolio.transaction_skipped",
            reason="unknown_type",
            transaction_id=record_id,
            type=record.get("type"),
        )
        return None

    if asset_type == AssetType.CRYPTO:
        symbol = _text(_first(record, "symbol", "ticker"))
    else:
        symbol = _text(_first(record, "ticker", "symbol"))
    if symbol is None and asset_type == AssetType.GOLD:
        symbol = _derive_gold_symbol(record)
    if symbol is None:
        logger.warning(
            "portfolio.transaction_skipped",
            reason="missing_symbol",
            transaction_id=record_id,
            asset_type=asset_type.value,
        )
        return None

    raw_timestamp = _first(record, "timestamp", "date", "createdAt", "created_at")
    timestamp = parse_timestamp(raw_timestamp)
    if timestamp is None:
        logger.warning(
            "portfolio.transaction_unparseable_timestamp",
            transaction_id=record_id,
            symbol=symbol,
            timestamp=str(raw_timestamp),
        )
        timestamp = EPOCH

    if record_id is None:
        record_id = f"{tx_type.value}:{asset_type.value}:{symbol.upper()}:{timestamp.isoformat()}"

    # Gold is recorded by weight; everything else by amount
    amount = to_decimal(_first(record, "amount", "shares", "weight", "quantity"))
    price = to_decimal(_first(record, "price", "avgPrice", "avg_price"))

    try:
        return Transaction(
            id=record_id,
            type=tx_type,
            asset_type=asset_type,
            symbol=symbol,
            amount=abs(amount),
            price=abs(price),
            currency=_text(record.get("currency")),
            timestamp=timestamp,
            broker=_text(record.get("broker")),
            exchange=_text(record.get("exchange")),
            market=_text(record.get("market")),
            subtype=_text(record.get("subtype")),
            brand=_text(record.get("brand")),
            use_manual_price=bool(_first(record, "useManualPrice", "use_manual_price")),
            manual_price=to_optional_decimal(_first(record, "manualPrice", "manual_price")),
        )
    except ValidationError as exc:
        logger.warning(
            "portfolio.transaction_skipped",
            reason="invalid",
            transaction_id=record_id,
            errors=exc.error_count(),
        )
        return None


def parse_transactions(records: Iterable[Transaction | Mapping[str, Any]]) -> list[Transaction]:
    """Parse records in order, dropping the ones that cannot be used."""
    transactions: list[Transaction] = []
    for record in records:
        tx = parse_transaction(record)
        if tx is not None:
            transactions.append(tx)
    return transactions


def dedupe_transactions(transactions: Iterable[Transaction]) -> list[Transaction]:
    """Keep the first occurrence of every transaction id, preserving order."""
    seen: set[str] = set()
    unique: list[Transaction] = []
    for tx in transactions:
        if tx.id in seen:
            continue
        seen.add(tx.id)
        unique.append(tx)
    return unique


def parse_price_quote(value: Any) -> PriceQuote:
    """PriceQuote from a quote model, a ``{price, currency}`` mapping or a bare number."""
    if isinstance(value, PriceQuote):
        return value
    if isinstance(value, Mapping):
        price = to_decimal(value.get("price"))
        return PriceQuote(price=max(price, Decimal("0")), currency=_text(value.get("currency")))
    return PriceQuote(price=max(to_decimal(value), Decimal("0")))


def parse_price_map(prices: Mapping[str, Any]) -> dict[str, PriceQuote]:
    """Normalize a price map; keys are stripped and uppercased."""
    parsed: dict[str, PriceQuote] = {}
    for key, value in prices.items():
        symbol = _text(key)
        if symbol is None:
            continue
        parsed[symbol.upper()] = parse_price_quote(value)
    return parsed


def parse_exchange_rate(rate: Any) -> Decimal | None:
    """
    Exchange rate as a positive Decimal, or None.

    Only real numbers are accepted; anything else (including strings and
    event objects handed over by mistake) means "unknown".
    """
    if rate is None or isinstance(rate, bool) or not isinstance(rate, (int, float, Decimal)):
        return None
    value = to_decimal(rate)
    if value <= 0:
        return None
    return value
