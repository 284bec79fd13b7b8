"""Decode raw marketplace log entries into typed ChainEvents."""

from datetime import UTC, datetime
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from marketsync.chain.abi import MARKETPLACE_ABI, event_topic
from marketsync.shared.exceptions import DecodeError
from marketsync.shared.models import ChainEvent


def _parse_int(value: Any) -> int:
    """Parse a JSON-RPC quantity (hex string or int)."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"Not an integer quantity: {value!r}")


def _to_bytes(value: Any) -> bytes:
    """Convert a hex string (or bytes) payload to bytes."""
    if isinstance(value, bytes | bytearray):
        return bytes(value)
    text = str(value)
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def _to_hex(value: Any) -> str:
    if isinstance(value, bytes | bytearray):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else f"0x{text}"


def _normalize_value(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return str(value).lower()
    return value


class EventDecoder:
    """Pure decoder for the marketplace contract's event logs.

    Indexed arguments are read from topics[1:] in declared order; the rest are
    ABI-decoded from the data payload. No I/O is performed.
    """

    def __init__(self, abi: list[dict[str, Any]] | None = None) -> None:
        """Build the topic0 lookup table.

        Args:
            abi: Contract ABI entries (defaults to the marketplace ABI)
        """
        entries = [e for e in (abi or MARKETPLACE_ABI) if e.get("type") == "event"]
        self._by_topic: dict[str, dict[str, Any]] = {event_topic(e): e for e in entries}

    @property
    def topics(self) -> dict[str, str]:
        """Event name to topic0 mapping."""
        return {entry["name"]: topic for topic, entry in self._by_topic.items()}

    def decode(self, raw_log: dict[str, Any]) -> ChainEvent:
        """Decode one raw log entry.

        Args:
            raw_log: Log object as returned by eth_getLogs or an eth_subscribe notification

        Returns:
            Typed ChainEvent

        Raises:
            DecodeError: If the log is removed, its topic is unknown, or its
                topics/data do not match the event schema
        """
        if raw_log.get("removed"):
            raise DecodeError("Log was removed by a chain reorganization")

        topics = raw_log.get("topics") or []
        if not topics:
            raise DecodeError("Log has no topics")

        topic0 = _to_hex(topics[0])
        entry = self._by_topic.get(topic0)
        if entry is None:
            raise DecodeError(f"Unrecognized event topic: {topic0}")

        indexed = [inp for inp in entry["inputs"] if inp.get("indexed")]
        non_indexed = [inp for inp in entry["inputs"] if not inp.get("indexed")]

        if len(topics) != len(indexed) + 1:
            raise DecodeError(
                f"{entry['name']} expects {len(indexed) + 1} topics, got {len(topics)}"
            )

        fields: dict[str, Any] = {}
        try:
            for inp, raw_topic in zip(indexed, topics[1:], strict=True):
                (value,) = decode([inp["type"]], _to_bytes(raw_topic))
                fields[inp["name"]] = _normalize_value(inp["type"], value)

            data = _to_bytes(raw_log.get("data") or "0x")
            if non_indexed:
                values = decode([inp["type"] for inp in non_indexed], data)
                for inp, value in zip(non_indexed, values, strict=True):
                    fields[inp["name"]] = _normalize_value(inp["type"], value)
            elif data:
                raise DecodeError(f"{entry['name']} carries no data, got {len(data)} bytes")

            block_timestamp = None
            if raw_log.get("blockTimestamp") is not None:
                block_timestamp = datetime.fromtimestamp(
                    _parse_int(raw_log["blockTimestamp"]), tz=UTC
                )

            return ChainEvent(
                topic_name=entry["name"],
                contract_address=str(raw_log["address"]),
                block_number=_parse_int(raw_log["blockNumber"]),
                log_index=_parse_int(raw_log["logIndex"]),
                transaction_hash=_to_hex(raw_log["transactionHash"]),
                fields=fields,
                block_timestamp=block_timestamp,
            )
        except DecodeError:
            raise
        except (DecodingError, KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed {entry['name']} log: {e}") from e
