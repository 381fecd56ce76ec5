# vulnCoin grinding attack harness
# Drives the attacker and victim nodes through a scripted run and grinds block
# contents whenever the attacker is selected to propose.

import argparse
import random
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from loguru import logger

from vulncoin_attack.config import HarnessConfig, add_args, configure_logging, load_config
from vulncoin_attack.utils import node_channel as commands
from vulncoin_attack.utils.errors import HarnessError
from vulncoin_attack.utils.fleet_utils import Fleet
from vulncoin_attack.utils.grinding import GrindResult, grind
from vulncoin_attack.utils.node_channel import NodeChannel
from vulncoin_attack.utils.propagation_utils import (
    create_stakes,
    create_transactions,
    generate_block_to,
    generate_random_block,
)
from vulncoin_attack.utils.validator_probe import probe_next_validator

SEPARATOR = "======================================="


@dataclass
class RoundTally:
    attacker_total: int = 0
    network_total: int = 0
    grind_results: List[GrindResult] = field(default_factory=list)

    @property
    def rounds(self) -> int:
        return self.attacker_total + self.network_total

    @property
    def attack_successful(self) -> bool:
        return self.attacker_total > self.network_total


@dataclass
class RunContext:
    """Everything a phase of the run needs; passed explicitly instead of living in globals."""
    config: HarnessConfig
    fleet: Fleet
    channel: NodeChannel
    rng: random.Random
    tally: RoundTally = field(default_factory=RoundTally)
    sleep: Callable[[float], None] = time.sleep


class GrindingAttack:
    """Runs bootstrap, pregeneration, staking, the consensus rounds and the final report."""

    def __init__(self, context: RunContext):
        self.context = context

    @classmethod
    def from_config(cls, config: HarnessConfig) -> "GrindingAttack":
        channel = NodeChannel(buffer_size=config.buffer_size, timeout=config.socket_timeout)
        fleet = Fleet.from_config(config, channel)
        return cls(RunContext(config=config, fleet=fleet, channel=channel, rng=random.Random(config.seed)))

    def bootstrap(self):
        ctx = self.context
        logger.info(f"Starting {len(ctx.fleet)} servers")
        ctx.fleet.start(ctx.config.start_stagger_seconds, sleep=ctx.sleep)
        ctx.fleet.wait_until_ready(attempts=ctx.config.bootstrap_attempts, delay=ctx.config.delay_seconds)
        ctx.fleet.discover_addresses()

    def pregenerate(self):
        ctx = self.context
        blocks = ctx.config.pregenerated_blocks
        logger.info(f"Generating [{blocks}] blocks randomly:")
        logger.info(SEPARATOR)
        for block in range(blocks):
            creator = generate_random_block(ctx.fleet, ctx.channel, ctx.rng)
            logger.info(f"Block [{block}] was generated by [{ctx.fleet[creator].username}].")
            ctx.sleep(ctx.config.start_stagger_seconds)
        logger.info(SEPARATOR)
        logger.info(f"First [{blocks}] blocks have been randomly generated.")

    def stake(self):
        ctx = self.context
        logger.info("Placing first set of stakes!")
        create_stakes(ctx.fleet, ctx.channel)
        logger.info(f"Transactions in the stakepool are: {ctx.channel.send(commands.list_stakepool(), ctx.fleet[0])}")

    def run_round(self, round_number: int):
        ctx = self.context
        logger.info(f"STARTING [{round_number}.] CONSENSUS ROUND!")
        logger.info("Network will now generate randomized transactions to fill the mempool:")
        create_transactions(ctx.fleet, ctx.channel, ctx.rng, pause=ctx.config.transaction_pause_seconds,
                            sleep=ctx.sleep)

        logger.info("Network will now pick the creator of the next block and finalize the stakepool:")
        expected_creator = probe_next_validator(ctx.fleet, ctx.channel)

        # Stakes placed now feed the stake pool of the following block.
        create_stakes(ctx.fleet, ctx.channel)

        if expected_creator == ctx.fleet.attacker.address:
            logger.success("Attacker was chosen as a block creator!")
            ctx.tally.attacker_total += 1
            ctx.tally.grind_results.append(grind(ctx.fleet, ctx.channel))
        else:
            logger.warning("Attacker was not chosen as a block creator. "
                           "Generating random block to the address of the chosen creator.")
            ctx.tally.network_total += 1
            generate_block_to(expected_creator, ctx.fleet, ctx.channel, ctx.rng)
        logger.info(SEPARATOR)

    def drain(self):
        ctx = self.context
        ctx.fleet.stop()
        ctx.fleet.join(timeout=ctx.config.socket_timeout)

    def report(self) -> RoundTally:
        tally = self.context.tally
        if tally.attack_successful:
            logger.success("Attack successful!")
        else:
            logger.error("Attack unsuccessful!")
        successful_grinds = sum(1 for result in tally.grind_results if result.successful)
        logger.info(f"Attacker has created [{tally.attacker_total}] blocks, while rest of the network "
                    f"has created [{tally.network_total}] blocks. "
                    f"Favorable grinds: [{successful_grinds}/{len(tally.grind_results)}].")
        return tally

    def run(self) -> int:
        """
        Executes the whole attack.

        Returns:
            int: Process exit status, 0 after a complete run and 1 after a fatal fault.
        """
        try:
            self.bootstrap()
            self.pregenerate()
            self.stake()
            for round_number in range(self.context.config.consensus_rounds):
                self.run_round(round_number)
        except HarnessError as e:
            logger.error(f"Aborting run: {e}")
            self.context.fleet.stop()
            return 1
        except KeyboardInterrupt:
            logger.warning("Run interrupted, stopping all nodes")
            self.context.fleet.stop()
            return 1
        except Exception as e:
            logger.exception(f"Unexpected error during run: {e!r}")
            self.context.fleet.stop()
            return 1
        self.drain()
        self.report()
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="vulnCoin proof-of-stake grinding attack harness")
    add_args(parser)
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = load_config(args)
    except HarnessError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    return GrindingAttack.from_config(config).run()


if __name__ == "__main__":
    sys.exit(main())
