"""Supported settlement chains and their USDC deployments."""
from __future__ import annotations

from dataclasses import dataclass

USDC_DECIMALS = 6


@dataclass(frozen=True)
class ChainInfo:
    id: int
    name: str
    symbol: str
    is_testnet: bool
    usdc_address: str
    rpc_url: str


CHAIN_INFO: dict[int, ChainInfo] = {
    421614: ChainInfo(
        id=421614,
        name="Arbitrum Sepolia",
        symbol="ETH",
        is_testnet=True,
        usdc_address="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
        rpc_url="https://sepolia-rollup.arbitrum.io/rpc",
    ),
    42161: ChainInfo(
        id=42161,
        name="Arbitrum One",
        symbol="ETH",
        is_testnet=False,
        usdc_address="0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        rpc_url="https://arb1.arbitrum.io/rpc",
    ),
}

VALID_CHAIN_IDS = tuple(CHAIN_INFO)


def is_valid_chain_id(chain_id: int | None) -> bool:
    return chain_id in CHAIN_INFO


def get_chain_info(chain_id: int | None) -> ChainInfo | None:
    if chain_id is None:
        return None
    return CHAIN_INFO.get(chain_id)


def get_supported_chains() -> list[ChainInfo]:
    return [CHAIN_INFO[chain_id] for chain_id in VALID_CHAIN_IDS]


def get_usdc_address(chain_id: int) -> str | None:
    info = CHAIN_INFO.get(chain_id)
    return info.usdc_address if info else None
