from loguru import logger

from vulncoin_attack.utils import node_channel as commands
from vulncoin_attack.utils.errors import DesynchronizationError
from vulncoin_attack.utils.fleet_utils import Fleet
from vulncoin_attack.utils.node_channel import NodeChannel


def probe_next_validator(fleet: Fleet, channel: NodeChannel) -> str:
    """
    Asks every node which address proposes the next block.

    Returns:
        str: The address all nodes agree on.

    Raises:
        DesynchronizationError: If any node answers differently from node 0,
            or node 0 does not answer at all.
    """
    expected = channel.send(commands.count_next_validator(), fleet[0]).strip()
    if not expected:
        raise DesynchronizationError(f"Node {fleet[0].label} did not report a next validator")

    for node in fleet.others(0):
        answer = channel.send(commands.count_next_validator(), node).strip()
        if answer != expected:
            logger.error("Nodes became desynchronized for unknown reasons. Try running the attack one more time.")
            raise DesynchronizationError(
                f"Node {node.label} selected {answer!r} while {fleet[0].label} selected {expected!r}"
            )

    logger.debug(f"All {len(fleet)} nodes agree on next validator {expected}")
    return expected
