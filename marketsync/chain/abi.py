"""Marketplace contract ABI, topic hashes and call encoding."""

from typing import Any

from eth_abi import decode, encode
from web3 import Web3

MARKETPLACE_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "MarketItemCreated",
        "inputs": [
            {"indexed": True, "name": "itemId", "type": "uint256"},
            {"indexed": True, "name": "nftContract", "type": "address"},
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": False, "name": "seller", "type": "address"},
            {"indexed": False, "name": "price", "type": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": "MarketItemSold",
        "inputs": [
            {"indexed": True, "name": "itemId", "type": "uint256"},
            {"indexed": True, "name": "buyer", "type": "address"},
            {"indexed": False, "name": "price", "type": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": "MarketItemCanceled",
        "inputs": [
            {"indexed": True, "name": "itemId", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "getMarketItem",
        "stateMutability": "view",
        "inputs": [{"name": "itemId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "itemId", "type": "uint256"},
                    {"name": "nftContract", "type": "address"},
                    {"name": "tokenId", "type": "uint256"},
                    {"name": "seller", "type": "address"},
                    {"name": "owner", "type": "address"},
                    {"name": "price", "type": "uint256"},
                    {"name": "sold", "type": "bool"},
                    {"name": "listedAt", "type": "uint256"},
                ],
            }
        ],
    },
]

MARKET_ITEM_CREATED = "MarketItemCreated"
MARKET_ITEM_SOLD = "MarketItemSold"
MARKET_ITEM_CANCELED = "MarketItemCanceled"

WATCHED_EVENTS = (MARKET_ITEM_CREATED, MARKET_ITEM_SOLD, MARKET_ITEM_CANCELED)

_MARKET_ITEM_TUPLE = "(uint256,address,uint256,address,address,uint256,bool,uint256)"


def event_signature(entry: dict[str, Any]) -> str:
    """Canonical signature used for topic0, e.g. 'MarketItemSold(uint256,address,uint256)'."""
    types = ",".join(inp["type"] for inp in entry["inputs"])
    return f"{entry['name']}({types})"


def event_topic(entry: dict[str, Any]) -> str:
    """Keccak topic0 of an event as a lowercase 0x-prefixed hex string."""
    return Web3.to_hex(Web3.keccak(text=event_signature(entry))).lower()


def event_entries() -> dict[str, dict[str, Any]]:
    """Event ABI entries keyed by event name."""
    return {entry["name"]: entry for entry in MARKETPLACE_ABI if entry["type"] == "event"}


EVENT_TOPICS: dict[str, str] = {name: event_topic(entry) for name, entry in event_entries().items()}

_GET_MARKET_ITEM_SELECTOR = bytes(Web3.keccak(text="getMarketItem(uint256)")[:4])


def encode_get_market_item(item_id: int) -> bytes:
    """Encode calldata for getMarketItem(itemId)."""
    return _GET_MARKET_ITEM_SELECTOR + encode(["uint256"], [item_id])


def decode_get_market_item(raw: bytes) -> dict[str, Any]:
    """Decode getMarketItem return data into a dict keyed by struct field name.

    Raises:
        eth_abi.exceptions.DecodingError: If the payload is not a MarketItem struct
    """
    (item,) = decode([_MARKET_ITEM_TUPLE], raw)
    item_id, nft_contract, token_id, seller, owner, price, sold, listed_at = item
    return {
        "item_id": item_id,
        "nft_contract": nft_contract,
        "token_id": token_id,
        "seller": seller,
        "owner": owner,
        "price": price,
        "sold": sold,
        "listed_at": listed_at,
    }
