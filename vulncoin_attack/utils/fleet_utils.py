import socket
import threading
import time
from typing import Callable, List, Optional, Sequence

import paramiko
import tenacity
from loguru import logger

from vulncoin_attack.config import BOOTSTRAP_ATTEMPTS, DELAY_SECONDS, START_STAGGER_SECONDS, HarnessConfig
from vulncoin_attack.utils import node_channel as commands
from vulncoin_attack.utils.errors import BootstrapTimeout, DesynchronizationError
from vulncoin_attack.utils.node_channel import Node, NodeChannel


class NodeNotReady(Exception):
    pass


class SshNodeLauncher:
    """Runs the vulnCoin server on a node's host over ssh and blocks until it exits."""

    def __init__(self, key_path: Optional[str] = None, server_binary: str = "vulnCoin-server",
                 ssh_port: int = 22, connect_timeout: float = 10):
        self.key_path = key_path
        self.server_binary = server_binary
        self.ssh_port = ssh_port
        self.connect_timeout = connect_timeout

    def command_for(self, node: Node) -> str:
        return f"{self.server_binary} {node.port} 0"

    def __call__(self, node: Node):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            logger.info(f"Connecting to {node.username}@{node.host}:{self.ssh_port}")
            client.connect(
                hostname=node.host,
                port=self.ssh_port,
                username=node.username,
                key_filename=self.key_path,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
            )
            command = self.command_for(node)
            logger.info(f"Starting server on {node.label}: {command}")
            stdin, stdout, stderr = client.exec_command(command)
            # The server blocks on write once the channel window fills up.
            for line in stdout:
                logger.debug(f"[{node.username}] {line.rstrip()}")
            exit_status = stdout.channel.recv_exit_status()
            error = stderr.read().decode("utf-8").strip()
            if error:
                logger.warning(f"Server on {node.label} stderr: {error}")
            logger.info(f"Server on {node.label} exited with status {exit_status}")
        except paramiko.ssh_exception.NoValidConnectionsError as e:
            logger.error(f"No valid connections to {node.host}:{self.ssh_port} - {e}")
        except paramiko.ssh_exception.AuthenticationException as e:
            logger.error(f"SSH authentication failed for {node.username}@{node.host} - {e}")
        except paramiko.SSHException as e:
            logger.error(f"General SSH error for {node.host}:{self.ssh_port} - {e}")
        except socket.timeout:
            logger.error(f"SSH connection to {node.host}:{self.ssh_port} timed out")
        finally:
            client.close()


class Fleet:
    """
    Ordered collection of the nodes taking part in the run.

    Position 0 is always the attacker. Every node owns one background thread
    that keeps its remote server process alive for the whole run.
    """

    def __init__(self, nodes: Sequence[Node], channel: NodeChannel, launcher: Callable[[Node], None]):
        if not nodes:
            raise ValueError("A fleet needs at least one node")
        self.nodes: List[Node] = list(nodes)
        self.nodes[0].attacker = True
        self.channel = channel
        self.launcher = launcher
        self.threads: List[threading.Thread] = []

    @classmethod
    def from_config(cls, config: HarnessConfig, channel: NodeChannel) -> "Fleet":
        nodes = [Node(host=host, port=config.port, username=username)
                 for host, username in zip(config.hosts, config.usernames)]
        launcher = SshNodeLauncher(key_path=config.ssh_key_path, server_binary=config.server_binary)
        return cls(nodes, channel, launcher)

    @property
    def attacker(self) -> Node:
        return self.nodes[0]

    @property
    def addresses(self) -> List[str]:
        return [node.address for node in self.nodes]

    def __len__(self):
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def __getitem__(self, index):
        return self.nodes[index]

    def others(self, index: int) -> List[Node]:
        """All nodes except the one at `index`, in fleet order."""
        return [node for position, node in enumerate(self.nodes) if position != index]

    def index_of(self, address: str) -> int:
        for position, node in enumerate(self.nodes):
            if node.address == address:
                return position
        raise DesynchronizationError(f"Address {address} does not belong to any node in the fleet")

    def start(self, stagger: float = START_STAGGER_SECONDS, sleep: Callable[[float], None] = time.sleep):
        """Launches every server in its own thread, pausing between launches so each node derives its own address."""
        for position, node in enumerate(self.nodes):
            if position > 0:
                sleep(stagger)
            thread = threading.Thread(target=self._run_node, args=(node,), name=f"node-{node.username}", daemon=True)
            thread.start()
            self.threads.append(thread)

    def _run_node(self, node: Node):
        self.launcher(node)
        logger.info(f"Thread [{node.username}] is stopping.")

    def _check_ready(self, expected_height: str):
        for node in self.nodes:
            height = self.channel.send(commands.get_block_count(), node)
            if height != expected_height:
                logger.info(f"Waiting for start of the servers ({node.label} reports {height!r}).")
                raise NodeNotReady(node.label)

    def wait_until_ready(self, expected_height: str = "1", attempts: int = BOOTSTRAP_ATTEMPTS,
                         delay: float = DELAY_SECONDS):
        """
        Polls every node until all of them report the expected block count.

        Raises:
            BootstrapTimeout: If the nodes are not ready after `attempts` polls.
                Every node is sent `stop` before the exception is raised.
        """
        retrying = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(attempts),
            wait=tenacity.wait_fixed(delay),
            retry=tenacity.retry_if_exception_type(NodeNotReady),
            reraise=True,
        )
        try:
            retrying(self._check_ready, expected_height)
        except NodeNotReady as e:
            logger.error("Timeout has happened. Wait for a while and then try running the application again.")
            self.stop()
            raise BootstrapTimeout(f"Node {e} did not reach height {expected_height} after {attempts} attempts")
        logger.success("Servers successfully started!")

    def discover_addresses(self):
        for node in self.nodes:
            node.address = commands.request(self.channel, commands.print_address(), node).strip()
            logger.info(f"Node {node.label} has address {node.address}")

    def stop(self):
        for node in self.nodes:
            self.channel.send(commands.stop(), node)

    def join(self, timeout: Optional[float] = None):
        for thread in self.threads:
            thread.join(timeout)
