"""Decode raw pump.fun notifications into NewToken / Trade events.

Two payload shapes are understood:

* a ``logsNotification`` value: ``{"signature", "err", "logs"}``
* a full transaction record: ``{"transaction", "meta", "blockTime"}``, either
  as returned by getTransaction or nested one level deeper by
  ``transactionSubscribe`` notifications.

Anchor "Program data:" events are preferred. For full transactions without
them the trade is rebuilt from pre/post balances.

Every function in here is pure and never raises; anything that cannot be
decoded yields no events.
"""
import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import base58
from construct import (
    ConstructError, Struct, Bytes, Int32ul, Int64ul, Int64sl, Flag, PascalString, Optional as OptionalField
)

from core.events import NewToken, Trade, TokenEvent
from execution.bonding_curve import get_bonding_curve_pda
from execution.constants import (
    PUMP_PROGRAM, LAMPORTS_PER_SOL, TOKEN_DECIMALS_FACTOR,
    EXCLUDED_MINTS, MIN_BLOCKTIME, MAX_BLOCKTIME
)

PROGRAM_ID = str(PUMP_PROGRAM)
INVOKE_PREFIX = f"Program {PROGRAM_ID} invoke"
INSTRUCTION_PREFIX = "Program log: Instruction: "
DATA_PREFIX = "Program data: "


def event_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode()).digest()[:8]


TRADE_EVENT_DISCRIMINATOR = event_discriminator("TradeEvent")
CREATE_EVENT_DISCRIMINATOR = event_discriminator("CreateEvent")

# Trailing bytes beyond these layouts (newer program versions) are ignored
TRADE_EVENT_LAYOUT = Struct(
    "mint" / Bytes(32),
    "sol_amount" / Int64ul,
    "token_amount" / Int64ul,
    "is_buy" / Flag,
    "user" / Bytes(32),
    "timestamp" / Int64sl,
    "virtual_sol_reserves" / Int64ul,
    "virtual_token_reserves" / Int64ul,
    "real_sol_reserves" / Int64ul,
    "real_token_reserves" / Int64ul
)

CREATE_EVENT_LAYOUT = Struct(
    "name" / PascalString(Int32ul, "utf8"),
    "symbol" / PascalString(Int32ul, "utf8"),
    "uri" / PascalString(Int32ul, "utf8"),
    "mint" / Bytes(32),
    "bonding_curve" / Bytes(32),
    "user" / Bytes(32),
    "creator" / OptionalField(Bytes(32)),
    "timestamp" / OptionalField(Int64sl)
)


@dataclass
class RawTransaction:
    signature: Optional[str]
    err: Any
    logs: List[str]
    meta: Optional[Dict] = None
    message: Optional[Dict] = None
    block_time: Optional[int] = None


def decode(payload: Dict, received_at: Optional[datetime] = None) -> Optional[TokenEvent]:
    """Decode the first event carried by payload, or None"""
    events = decode_events(payload, received_at)
    return events[0] if events else None


def decode_events(payload: Dict, received_at: Optional[datetime] = None) -> List[TokenEvent]:
    """Decode every pump.fun event carried by payload, in log order.

    received_at is only used to timestamp a CreateEvent when neither the
    event nor the transaction carries a time of its own.
    """
    try:
        raw = normalize_payload(payload)
        if raw is None or raw.err or not raw.signature:
            return []

        events = _decode_program_data(raw, received_at)
        if not events and raw.meta is not None:
            trade = _decode_balance_deltas(raw)
            if trade is not None:
                events = [trade]
        return events
    except Exception:
        return []


def normalize_payload(payload: Dict) -> Optional[RawTransaction]:
    """Reduce the accepted payload shapes to a RawTransaction"""
    if not isinstance(payload, dict):
        return None

    record = payload
    # Full JSON-RPC notification envelope
    if "params" in record:
        record = record["params"].get("result") or {}
    if isinstance(record.get("value"), dict):
        record = record["value"]

    signature = record.get("signature")

    if "logs" in record:
        return RawTransaction(
            signature=signature,
            err=record.get("err"),
            logs=list(record.get("logs") or [])
        )

    meta = record.get("meta")
    container = record.get("transaction")
    block_time = record.get("blockTime")

    # transactionSubscribe nests {transaction, meta} under "transaction"
    if meta is None and isinstance(container, dict) and "meta" in container:
        meta = container.get("meta")
        block_time = container.get("blockTime", block_time)
        container = container.get("transaction")

    if not isinstance(meta, dict) or not isinstance(container, dict):
        return None

    if not signature:
        signatures = container.get("signatures") or []
        signature = signatures[0] if signatures else None

    return RawTransaction(
        signature=signature,
        err=meta.get("err"),
        logs=list(meta.get("logMessages") or []),
        meta=meta,
        message=container.get("message") or {},
        block_time=block_time
    )


def _decode_program_data(raw: RawTransaction, received_at: Optional[datetime]) -> List[TokenEvent]:
    if not any(line.startswith(INVOKE_PREFIX) for line in raw.logs):
        return []

    instructions = [line[len(INSTRUCTION_PREFIX):].strip()
                    for line in raw.logs if line.startswith(INSTRUCTION_PREFIX)]
    has_trade = any(name.startswith(("Buy", "Sell")) for name in instructions)
    has_create = any(name.startswith("Create") for name in instructions)

    events: List[TokenEvent] = []
    for line in raw.logs:
        if not line.startswith(DATA_PREFIX):
            continue
        data = _b64decode(line[len(DATA_PREFIX):])
        if data is None or len(data) < 8:
            continue

        discriminator, body = data[:8], data[8:]
        event: Optional[TokenEvent] = None
        # A malformed event only costs its own line
        try:
            if discriminator == TRADE_EVENT_DISCRIMINATOR and has_trade:
                event = _decode_trade_event(body, raw.signature)
            elif discriminator == CREATE_EVENT_DISCRIMINATOR and has_create:
                event = _decode_create_event(body, raw.signature, raw.block_time, received_at)
        except (ConstructError, ValueError):
            continue

        if event is not None:
            events.append(event)
    return events


def _decode_trade_event(body: bytes, signature: str) -> Optional[Trade]:
    parsed = TRADE_EVENT_LAYOUT.parse(body)
    if parsed.sol_amount == 0 or parsed.token_amount == 0:
        return None

    timestamp = _to_datetime(parsed.timestamp)
    if timestamp is None:
        return None

    mint = _b58(parsed.mint)
    if mint in EXCLUDED_MINTS:
        return None

    user = _b58(parsed.user)
    curve = str(get_bonding_curve_pda(mint))

    sol_amount = Decimal(parsed.sol_amount) / Decimal(LAMPORTS_PER_SOL)
    token_amount = Decimal(parsed.token_amount) / Decimal(TOKEN_DECIMALS_FACTOR)

    return Trade(
        mint=mint,
        signature=signature,
        timestamp=timestamp,
        side="buy" if parsed.is_buy else "sell",
        buyer=user if parsed.is_buy else curve,
        seller=curve if parsed.is_buy else user,
        price_in_quote=sol_amount / token_amount,
        base_amount=token_amount,
        quote_amount=sol_amount,
        virtual_sol_reserves=Decimal(parsed.virtual_sol_reserves) / Decimal(LAMPORTS_PER_SOL),
        virtual_token_reserves=Decimal(parsed.virtual_token_reserves) / Decimal(TOKEN_DECIMALS_FACTOR)
    )


def _decode_create_event(body: bytes,
                         signature: str,
                         block_time: Optional[int],
                         received_at: Optional[datetime]) -> Optional[NewToken]:
    parsed = CREATE_EVENT_LAYOUT.parse(body)

    mint = _b58(parsed.mint)
    if mint in EXCLUDED_MINTS:
        return None

    if parsed.timestamp is not None:
        timestamp = _to_datetime(parsed.timestamp)
    elif block_time is not None:
        timestamp = _to_datetime(block_time)
    else:
        timestamp = received_at
    if timestamp is None:
        return None

    user = _b58(parsed.user)
    return NewToken(
        mint=mint,
        signature=signature,
        timestamp=timestamp,
        creator=_b58(parsed.creator) if parsed.creator is not None else user,
        bonding_curve=_b58(parsed.bonding_curve),
        name=parsed.name,
        symbol=parsed.symbol,
        uri=parsed.uri
    )


def _decode_balance_deltas(raw: RawTransaction) -> Optional[Trade]:
    """Rebuild a trade from the signer's token and lamport balance changes"""
    timestamp = _to_datetime(raw.block_time) if raw.block_time is not None else None
    if timestamp is None:
        return None

    keys = account_keys(raw.message or {})
    if not keys:
        return None
    signer = keys[0]

    balances = _token_balance_changes(raw.meta)

    # Signer's net change per mint
    signer_deltas: Dict[str, Decimal] = {}
    for (_, mint), (owner, delta) in balances.items():
        if owner == signer and mint not in EXCLUDED_MINTS:
            signer_deltas[mint] = signer_deltas.get(mint, Decimal(0)) + delta
    moved = {mint: delta for mint, delta in signer_deltas.items() if delta != 0}
    if len(moved) != 1:
        return None
    mint, base_delta = next(iter(moved.items()))
    is_buy = base_delta > 0

    # Counterparty: the largest opposite move of the same mint
    counterparty = None
    largest = Decimal(0)
    for (_, account_mint), (owner, delta) in balances.items():
        if account_mint != mint or owner in (None, signer):
            continue
        if (delta < 0) == is_buy and abs(delta) > largest:
            largest = abs(delta)
            counterparty = owner
    if counterparty is None:
        return None

    pre = raw.meta.get("preBalances") or []
    post = raw.meta.get("postBalances") or []
    if not pre or not post:
        return None
    lamport_delta = post[0] - pre[0]
    # A buy spends SOL and a sell receives it
    if (is_buy and lamport_delta >= 0) or (not is_buy and lamport_delta <= 0):
        return None

    base_amount = abs(base_delta)
    quote_amount = Decimal(abs(lamport_delta)) / Decimal(LAMPORTS_PER_SOL)

    return Trade(
        mint=mint,
        signature=raw.signature,
        timestamp=timestamp,
        side="buy" if is_buy else "sell",
        buyer=signer if is_buy else counterparty,
        seller=counterparty if is_buy else signer,
        price_in_quote=quote_amount / base_amount,
        base_amount=base_amount,
        quote_amount=quote_amount
    )


def _token_balance_changes(meta: Dict) -> Dict[tuple, list]:
    """Map (account_index, mint) -> [owner, post - pre] in UI units"""
    changes: Dict[tuple, list] = {}
    for sign, entries in ((-1, meta.get("preTokenBalances") or []),
                          (1, meta.get("postTokenBalances") or [])):
        for entry in entries:
            key = (entry.get("accountIndex"), entry.get("mint"))
            amount = _ui_amount(entry.get("uiTokenAmount") or {})
            if amount is None:
                continue
            slot = changes.setdefault(key, [entry.get("owner"), Decimal(0)])
            if slot[0] is None:
                slot[0] = entry.get("owner")
            slot[1] += sign * amount
    return changes


def _ui_amount(token_amount: Dict) -> Optional[Decimal]:
    amount = token_amount.get("amount")
    decimals = token_amount.get("decimals")
    if amount is None or decimals is None:
        return None
    return Decimal(amount).scaleb(-int(decimals))


def account_keys(message: Dict) -> List[str]:
    """Account keys as strings, for both json and jsonParsed encodings"""
    keys = []
    for key in message.get("accountKeys") or []:
        if isinstance(key, dict):
            key = key.get("pubkey")
        if key:
            keys.append(key)
    return keys


def _to_datetime(value: int) -> Optional[datetime]:
    if not MIN_BLOCKTIME <= value <= MAX_BLOCKTIME:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _b58(raw: bytes) -> str:
    return base58.b58encode(raw).decode("utf-8")


def _b64decode(encoded: str) -> Optional[bytes]:
    try:
        return base64.b64decode(encoded.strip(), validate=True)
    except ValueError:
        return None
