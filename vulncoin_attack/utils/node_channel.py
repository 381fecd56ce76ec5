import json
import socket
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from loguru import logger

from vulncoin_attack.config import BUFFER_SIZE, MAX_COMMAND_LENGTH, SOCKET_TIMEOUT_SECONDS
from vulncoin_attack.utils.errors import TransportError


@dataclass
class Node:
    """A vulnCoin server reachable at host:port. `address` is filled in once the node is running."""
    host: str
    port: int
    username: str
    address: Optional[str] = None
    attacker: bool = False

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


class NodeChannel:
    """
    One-shot request/response transport to a node.

    Every call opens a fresh TCP connection, sends a single command, reads one
    reply of at most `buffer_size` bytes and closes the connection. Connection
    failures are reported as an empty string; callers decide whether that is
    fatal.
    """

    def __init__(self, buffer_size: int = BUFFER_SIZE, timeout: float = SOCKET_TIMEOUT_SECONDS):
        self.buffer_size = buffer_size
        self.timeout = timeout

    def send(self, command: str, node: Node) -> str:
        if len(command) > MAX_COMMAND_LENGTH:
            logger.warning(f"Command of {len(command)} characters exceeds the node limit of "
                           f"{MAX_COMMAND_LENGTH}; the server will truncate it")
        try:
            with socket.create_connection((node.host, node.port), timeout=self.timeout) as sock:
                sock.sendall(command.encode("utf-8"))
                data = sock.recv(self.buffer_size)
        except OSError as e:
            logger.debug(f"No response from {node.label} to '{command.split(' ', 1)[0]}': {e}")
            return ""
        return data.decode("utf-8", errors="replace")


def request(channel: NodeChannel, command: str, node: Node) -> str:
    """Sends a command whose reply is required; an empty reply is a transport failure."""
    response = channel.send(command, node)
    if response == "":
        raise TransportError(f"Node {node.label} did not answer '{command}'")
    return response


def request_json(channel: NodeChannel, command: str, node: Node) -> Any:
    response = request(channel, command, node)
    try:
        return json.loads(response)
    except json.JSONDecodeError as e:
        raise TransportError(f"Node {node.label} sent malformed JSON for '{command}': {e}")


def broadcast(channel: NodeChannel, command: str, nodes: Sequence[Node]):
    for node in nodes:
        channel.send(command, node)


# Command builders for the vulnCoin server protocol.

def generate() -> str:
    return "generate"


def print_blockchain() -> str:
    return "printBlockchain"


def print_transaction(txid: str) -> str:
    return f"printTransaction {txid}"


def print_address() -> str:
    return "printAddress"


def get_block_count() -> str:
    return "getBlockCount"


def list_mempool() -> str:
    return "listMempool"


def list_unspent_linked_to_me() -> str:
    return "listUnspentLinkedToMe"


def list_stakepool() -> str:
    return "listStakepool"


def list_old_stakepool() -> str:
    return "listOldStakepool"


def count_next_validator() -> str:
    return "countNextValidator"


def load_coinbase_transaction(address: str, timestamp: str) -> str:
    return f"loadCoinbaseTransaction {address} {timestamp}"


def load_transaction(from_txid: str, from_address: str, to_address: str, timestamp: str) -> str:
    return f"loadTransaction {from_txid} {from_address} {to_address} {timestamp}"


def create_new_transaction(txid: str, from_address: str, to_address: str) -> str:
    return f"createNewTransaction {txid} {from_address} {to_address}"


def propose_block(txids: Sequence[str]) -> str:
    return "proposeBlock {" + " ".join(txids) + "}"


def stake(txid: str, address: str) -> str:
    return f"stake {txid} {address}"


def stop() -> str:
    return "stop"
