"""Contract function and event definitions used by the holders pipeline.

Only the handful of read functions the pipeline calls are described here;
encoding/decoding is delegated to eth-abi and selectors/topics to eth-utils.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, keccak

# Error(string) and Panic(uint256) revert payload selectors
_ERROR_SELECTOR = bytes.fromhex("08c379a0")
_PANIC_SELECTOR = bytes.fromhex("4e487b71")


@dataclass(frozen=True)
class ContractFunction:
    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    selector: bytes = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "selector", function_signature_to_4byte_selector(self.signature))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    def encode(self, args: Sequence[Any] = ()) -> bytes:
        if len(args) != len(self.inputs):
            raise ValueError(f"{self.signature} expects {len(self.inputs)} args, got {len(args)}")
        if not self.inputs:
            return self.selector
        return self.selector + abi_encode(list(self.inputs), list(args))

    def decode(self, data: bytes) -> Any:
        """Decode return data; single-output functions return the bare value."""
        values = abi_decode(list(self.outputs), data)
        if len(self.outputs) == 1:
            return values[0]
        return tuple(values)


# ==================== ERC721 / COLLECTION READS ====================

OWNER_OF = ContractFunction("ownerOf", ("uint256",), ("address",))
TOTAL_SUPPLY = ContractFunction("totalSupply", (), ("uint256",))
TOTAL_BURNED = ContractFunction("totalBurned", (), ("uint256",))
TOKEN_ID_COUNTER = ContractFunction("tokenId", (), ("uint256",))
GET_NFT_TIER = ContractFunction("getNftTier", ("uint256",), ("uint8",))
# (rarityNumber, tier, rarity)
GET_NFT_ATTRIBUTE = ContractFunction("getNFTAttribute", ("uint256",), ("uint256", "uint8", "uint8"))
# (shares, lockedAscendant, rewardDebt, startTime, endTime)
USER_RECORDS = ContractFunction(
    "userRecords", ("uint256",), ("uint256", "uint256", "uint256", "uint32", "uint32")
)
TOTAL_SHARES = ContractFunction("totalShares", (), ("uint256",))
TO_DISTRIBUTE = ContractFunction("toDistribute", ("uint8",), ("uint256",))
BATCH_CLAIMABLE_AMOUNT = ContractFunction("batchClaimableAmount", ("uint256[]",), ("uint256",))

# ==================== VAULT READS ====================

# (availability, totalReward)
GET_REWARDS = ContractFunction("getRewards", ("uint256[]", "address"), ("bool[]", "uint256"))
# (availability, burned, infernoPool, fluxPool, e280Pool)
GET_REWARDS_MULTI_POOL = ContractFunction(
    "getRewards",
    ("uint256[]", "address", "bool"),
    ("bool[]", "bool[]", "uint256", "uint256", "uint256"),
)

# ==================== MULTICALL3 ====================

AGGREGATE3 = ContractFunction("aggregate3", ("(address,bool,bytes)[]",), ("(bool,bytes)[]",))

FUNCTIONS: dict[str, ContractFunction] = {
    fn.name: fn
    for fn in (
        OWNER_OF,
        TOTAL_SUPPLY,
        TOTAL_BURNED,
        TOKEN_ID_COUNTER,
        GET_NFT_TIER,
        GET_NFT_ATTRIBUTE,
        USER_RECORDS,
        TOTAL_SHARES,
        TO_DISTRIBUTE,
        BATCH_CLAIMABLE_AMOUNT,
    )
}


def get_function(name: str) -> ContractFunction:
    """Look up a read function configured by name on a ContractConfig."""
    try:
        return FUNCTIONS[name]
    except KeyError:
        raise ValueError(f"No ABI definition for function {name!r}") from None


# ==================== EVENTS ====================

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()


def topic_to_address(topic: str) -> str:
    """Indexed addresses are left-padded to 32 bytes; keep the low 20."""
    clean = topic.lower().removeprefix("0x")
    return "0x" + clean[-40:]


def hex_to_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if value.startswith("0x") else int(value)


def decode_revert_reason(data: bytes) -> str:
    """Best-effort human readable reason from revert return data."""
    if not data:
        return "execution reverted"
    try:
        if data[:4] == _ERROR_SELECTOR:
            (reason,) = abi_decode(["string"], data[4:])
            return f"execution reverted: {reason}"
        if data[:4] == _PANIC_SELECTOR:
            (code,) = abi_decode(["uint256"], data[4:])
            return f"execution reverted: panic 0x{code:02x}"
    except DecodingError:
        pass
    return f"execution reverted: 0x{data.hex()}"
