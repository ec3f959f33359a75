import re
from typing import Optional


# Ethereum address regex
ETH_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")

MAX_PAGE_SIZE = 5000


def validate_eth_address(address: str) -> str:
    """Validate Ethereum address format"""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not ETH_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Ethereum address format: {address}")

    return address


def normalize_wallet(address: str) -> str:
    """Validate and lowercase an address; holders maps are keyed this way."""
    return validate_eth_address(address).lower()


def validate_page_size(value: Optional[int], default: int, max_limit: int = MAX_PAGE_SIZE) -> int:
    """Clamp a requested page size, falling back to the contract default"""
    if value is None:
        return default
    if value < 1:
        return 1
    if value > max_limit:
        return max_limit
    return value

