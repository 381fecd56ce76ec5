import argparse
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv
from loguru import logger

from vulncoin_attack.utils.errors import ConfigError

U32_MAX = 4294967295
__version__ = "1.0.0"

# Seconds to wait between readiness polls. Bootstrap waits at most BOOTSTRAP_ATTEMPTS * DELAY_SECONDS.
DELAY_SECONDS = 2
BOOTSTRAP_ATTEMPTS = 5
# Must be >= 4 so at least one staker has mined two blocks and can deposit two stakes.
PREGENERATED_BLOCKS = 10
CONSENSUS_ROUNDS = 15
# printBlockchain replies can be large
BUFFER_SIZE = 60000
# Server side receive limit, roughly (4096 - 76) / 64 = 62 relayed transactions.
MAX_COMMAND_LENGTH = 4096
START_STAGGER_SECONDS = 1
TRANSACTION_PAUSE_SECONDS = 1
SOCKET_TIMEOUT_SECONDS = 30.0

DEFAULT_USERNAMES = ["attacker", "victim1", "victim2"]
HOST_VARIABLES = ["IP_ATTACKER", "IP_VICTIM1", "IP_VICTIM2"]

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def configure_logging(level: str = "INFO"):
    """Replace loguru's default handler with the harness format on stdout."""
    logger.remove()
    logger.add(sys.stdout, format=LOG_FORMAT, level=level.upper(), colorize=True)


@dataclass
class HarnessConfig:
    hosts: List[str]
    port: int
    usernames: List[str] = field(default_factory=lambda: list(DEFAULT_USERNAMES))
    ssh_key_path: Optional[str] = None
    server_binary: str = "vulnCoin-server"
    pregenerated_blocks: int = PREGENERATED_BLOCKS
    consensus_rounds: int = CONSENSUS_ROUNDS
    delay_seconds: float = DELAY_SECONDS
    bootstrap_attempts: int = BOOTSTRAP_ATTEMPTS
    start_stagger_seconds: float = START_STAGGER_SECONDS
    transaction_pause_seconds: float = TRANSACTION_PAUSE_SECONDS
    socket_timeout: float = SOCKET_TIMEOUT_SECONDS
    buffer_size: int = BUFFER_SIZE
    seed: Optional[int] = None

    def validate(self):
        if not self.hosts:
            raise ConfigError("At least one node host is required")
        if len(self.usernames) < len(self.hosts):
            raise ConfigError(f"Expected {len(self.hosts)} ssh usernames, got {len(self.usernames)}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.consensus_rounds < 0:
            raise ConfigError("consensus_rounds must not be negative")
        if self.pregenerated_blocks < 4:
            logger.warning(
                f"Only {self.pregenerated_blocks} pregenerated blocks; with fewer than 4 no staker "
                f"is guaranteed a second output and the run may stall"
            )
        return self


def add_args(parser: argparse.ArgumentParser):
    parser.add_argument("--rounds", type=int, default=None, help="Number of consensus rounds to run.")
    parser.add_argument("--pregenerated", type=int, default=None, help="Blocks generated before staking.")
    parser.add_argument("--delay", type=float, default=None, help="Seconds between readiness polls.")
    parser.add_argument("--port", type=int, default=None, help="Port shared by every node (overrides PORT).")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the harness RNG.")
    parser.add_argument("--log-level", default="INFO", help="loguru level for console output.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")


def load_config(args: Optional[argparse.Namespace] = None) -> HarnessConfig:
    """
    Builds the harness configuration from .env, the environment and CLI overrides.

    Args:
        args: Parsed arguments from a parser prepared with add_args, or None.

    Returns:
        HarnessConfig: Validated configuration.

    Raises:
        ConfigError: If a node host or the port is missing or invalid.
    """
    load_dotenv()

    hosts = []
    for variable in HOST_VARIABLES:
        host = os.getenv(variable)
        if not host:
            raise ConfigError(f"Environment variable {variable} is not set")
        hosts.append(host)

    port = getattr(args, "port", None) or os.getenv("PORT")
    if port is None:
        raise ConfigError("Environment variable PORT is not set")
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"PORT must be an integer, got {port!r}")

    config = HarnessConfig(
        hosts=hosts,
        port=port,
        ssh_key_path=os.getenv("SSH_KEY_PATH"),
        server_binary=os.getenv("VULNCOIN_SERVER_BIN", "vulnCoin-server"),
    )
    if args is not None:
        if args.rounds is not None:
            config.consensus_rounds = args.rounds
        if args.pregenerated is not None:
            config.pregenerated_blocks = args.pregenerated
        if args.delay is not None:
            config.delay_seconds = args.delay
        config.seed = args.seed

    logger.debug(f"Loaded config: hosts={config.hosts}, port={config.port}, "
                 f"rounds={config.consensus_rounds}, pregenerated={config.pregenerated_blocks}")
    return config.validate()
