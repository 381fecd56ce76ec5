import hashlib
import re
from typing import Sequence, Union

from vulncoin_attack.config import U32_MAX

HASH_PREFIX_WIDTH = 16
HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")


def sha256_hex(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def get_block_hash(prev_block_hash: str, txids: Sequence[str]) -> str:
    """
    Recomputes a block hash the way the node does.

    The transaction ids are concatenated in list order and hashed, then the
    previous block hash and that transactions hash are concatenated and hashed.

    Args:
        prev_block_hash: Hash of the preceding block.
        txids: Ordered transaction ids, coinbase included.

    Returns:
        str: Lowercase hex sha256.
    """
    transactions_hash = sha256_hex("".join(txids))
    return sha256_hex(prev_block_hash + transactions_hash)


def parse_hex_prefix(value: str, width: int = HASH_PREFIX_WIDTH) -> int:
    """Parses the leading hex digits of the first `width` characters, keeping the low 32 bits like the node's unsigned int."""
    match = HEX_DIGITS.match(value[:width])
    if match is None:
        raise ValueError(f"No hex digits at the start of {value!r}")
    return int(match.group(0), 16) & U32_MAX
