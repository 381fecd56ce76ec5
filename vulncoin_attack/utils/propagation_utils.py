import random
import time
from typing import Callable, Optional

from loguru import logger

from vulncoin_attack.config import TRANSACTION_PAUSE_SECONDS
from vulncoin_attack.utils import node_channel as commands
from vulncoin_attack.utils.fleet_utils import Fleet
from vulncoin_attack.utils.node_channel import NodeChannel, request, request_json


def now_timestamp() -> str:
    return str(int(time.time()))


def generate_random_block(fleet: Fleet, channel: NodeChannel, rng: random.Random) -> int:
    """
    Has a random node mine a coinbase-only block and replicates it on every other node.

    Returns:
        int: Fleet position of the block creator.
    """
    creator_index = rng.randrange(len(fleet))
    creator = fleet[creator_index]

    channel.send(commands.generate(), creator)

    blockchain = request_json(channel, commands.print_blockchain(), creator)
    coinbase_txid = blockchain[-1]["transactions"][0]
    coinbase = request_json(channel, commands.print_transaction(coinbase_txid), creator)

    load_command = commands.load_coinbase_transaction(coinbase["address"], str(coinbase["timestamp"]))
    propose_command = commands.propose_block([coinbase_txid])
    for node in fleet.others(creator_index):
        channel.send(load_command, node)
        channel.send(propose_command, node)

    return creator_index


def generate_block_to(expected_creator: str, fleet: Fleet, channel: NodeChannel, rng: random.Random,
                      now: Callable[[], str] = now_timestamp):
    """
    Builds a block for the selected proposer with a random slice of its mempool.

    The coinbase transaction and the block are created on node 0 first and then
    replayed on the rest of the fleet in order.

    Args:
        expected_creator: vulnCoin address of the selected proposer.
        fleet: Running fleet with discovered addresses.
        channel: Transport used for every command.
        rng: Source of the transaction count.
        now: Timestamp factory for the coinbase transaction.
    """
    creator_index = fleet.index_of(expected_creator)
    mempool = request_json(channel, commands.list_mempool(), fleet[creator_index])
    logger.info(f"Block creator has [{len(mempool)}] transactions in their mempool.")

    transaction_count = rng.randrange(len(mempool)) if mempool else 0

    load_command = commands.load_coinbase_transaction(expected_creator, now())
    coinbase_txid = request(channel, load_command, fleet[0]).strip()
    txids = [coinbase_txid] + [entry["txid"] for entry in mempool[:transaction_count]]
    propose_command = commands.propose_block(txids)
    channel.send(propose_command, fleet[0])

    for node in fleet.others(0):
        channel.send(load_command, node)
        channel.send(propose_command, node)
    logger.info(f"Block with [{len(txids)}] transactions assigned to [{fleet[creator_index].username}].")


def create_transactions(fleet: Fleet, channel: NodeChannel, rng: random.Random,
                        pause: float = TRANSACTION_PAUSE_SECONDS,
                        sleep: Optional[Callable[[float], None]] = None):
    """Spends all but one output of every node, keeping the last one for staking."""
    sleep = sleep or time.sleep
    addresses = fleet.addresses

    for index, node in enumerate(fleet):
        receivers = fleet.others(index)
        unspent = request_json(channel, commands.list_unspent_linked_to_me(), node)
        last_receiver = None

        while len(unspent) > 1:
            # A different receiver every time guards against duplicate txids.
            receiver = rng.randrange(len(addresses))
            while receiver == last_receiver and len(addresses) > 1:
                receiver = rng.randrange(len(addresses))

            source_txid = unspent[0]["txid"]
            source_address = unspent[0]["address"]
            new_txid = request(
                channel, commands.create_new_transaction(source_txid, source_address, addresses[receiver]), node
            ).strip()
            new_transaction = request_json(channel, commands.print_transaction(new_txid), node)

            load_command = commands.load_transaction(
                source_txid, source_address, new_transaction["address"], str(new_transaction["timestamp"])
            )
            for receiver_node in receivers:
                channel.send(load_command, receiver_node)

            logger.info(f"UTXO with txid [{source_txid}] tied to address [{source_address}] has been used to "
                        f"generate transaction with txid [{new_transaction['txid']}] tied to address "
                        f"[{new_transaction['address']}].")

            unspent = request_json(channel, commands.list_unspent_linked_to_me(), node)
            last_receiver = receiver

            # Nodes reject transactions created within the same second.
            sleep(pause)


def create_stakes(fleet: Fleet, channel: NodeChannel):
    for node in fleet:
        unspent = request_json(channel, commands.list_unspent_linked_to_me(), node)
        if not unspent:
            logger.debug(f"Node {node.label} has no output to stake")
            continue
        stake_command = commands.stake(unspent[0]["txid"], unspent[0]["address"])
        for target in fleet:
            channel.send(stake_command, target)
