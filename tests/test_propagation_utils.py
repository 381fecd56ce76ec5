import os
import random
import sys
import unittest
from unittest.mock import Mock

# Add the parent directory to the path to import vulncoin_attack
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fake_nodes import FakeChannel, as_json, make_fleet
from vulncoin_attack.utils.errors import DesynchronizationError, TransportError
from vulncoin_attack.utils.propagation_utils import (
    create_stakes,
    create_transactions,
    generate_block_to,
    generate_random_block,
    now_timestamp,
)


class WalletNode:
    """Tracks one fake node's spendable outputs across createNewTransaction calls."""

    def __init__(self, address, txids):
        self.address = address
        self.unspent = [{"txid": txid, "address": address} for txid in txids]
        self.created = {}

    def list_unspent(self, command):
        return as_json(self.unspent)

    def create(self, command):
        _, txid, from_address, to_address = command.split(" ")
        self.unspent = [entry for entry in self.unspent if entry["txid"] != txid]
        new_txid = f"{self.address}-new{len(self.created)}"
        self.created[new_txid] = to_address
        return new_txid

    def print_transaction(self, command):
        txid = command.split(" ")[1]
        return as_json({"txid": txid, "address": self.created[txid], "timestamp": "1700000000"})


class TestRandomBlock(unittest.TestCase):

    def setUp(self):
        self.channel = FakeChannel()
        self.fleet = make_fleet(self.channel)
        self.hosts = [node.host for node in self.fleet]

    def test_replicates_creator_block(self):
        rng = Mock(spec=random.Random)
        rng.randrange.return_value = 1
        creator = self.hosts[1]
        self.channel.on(creator, "printBlockchain", as_json([
            {"prevBlockHash": "0", "transactions": ["genesis"]},
            {"prevBlockHash": "1", "transactions": ["cb42"]},
        ]))
        self.channel.on(creator, "printTransaction", as_json({"txid": "cb42", "address": "addr1",
                                                              "timestamp": "1700000001"}))

        self.assertEqual(generate_random_block(self.fleet, self.channel, rng), 1)

        rng.randrange.assert_called_once_with(3)
        self.assertEqual(self.channel.hosts_sent("generate"), [creator])
        self.assertEqual(self.channel.hosts_sent("printTransaction cb42"), [creator])
        load = "loadCoinbaseTransaction addr1 1700000001"
        self.assertEqual(self.channel.hosts_sent(load), [self.hosts[0], self.hosts[2]])
        self.assertEqual(self.channel.hosts_sent("proposeBlock {cb42}"), [self.hosts[0], self.hosts[2]])
        for host in (self.hosts[0], self.hosts[2]):
            self.assertEqual(self.channel.commands_for(host), [load, "proposeBlock {cb42}"])

    def test_silent_creator_is_fatal(self):
        rng = Mock(spec=random.Random)
        rng.randrange.return_value = 0
        self.channel.on(self.hosts[0], "printBlockchain", "")
        with self.assertRaises(TransportError):
            generate_random_block(self.fleet, self.channel, rng)


class TestTargetedBlock(unittest.TestCase):

    def setUp(self):
        self.channel = FakeChannel()
        self.fleet = make_fleet(self.channel)
        self.hosts = [node.host for node in self.fleet]
        self.channel.on(self.hosts[0], "loadCoinbaseTransaction", "cb7\n")

    def test_block_uses_random_mempool_prefix(self):
        self.channel.on(self.hosts[2], "listMempool", as_json([{"txid": "m1"}, {"txid": "m2"}, {"txid": "m3"}]))
        rng = Mock(spec=random.Random)
        rng.randrange.return_value = 2

        generate_block_to("addr2", self.fleet, self.channel, rng, now=lambda: "1700000005")

        rng.randrange.assert_called_once_with(3)
        self.assertEqual(self.channel.hosts_sent("listMempool"), [self.hosts[2]])
        load = "loadCoinbaseTransaction addr2 1700000005"
        propose = "proposeBlock {cb7 m1 m2}"
        self.assertEqual(self.channel.hosts_sent(load), self.hosts)
        self.assertEqual(self.channel.hosts_sent(propose), self.hosts)
        self.assertEqual(self.channel.commands_for(self.hosts[0])[-2:], [load, propose])

    def test_empty_mempool_gives_coinbase_only_block(self):
        self.channel.on(self.hosts[1], "listMempool", as_json([]))
        rng = Mock(spec=random.Random)

        generate_block_to("addr1", self.fleet, self.channel, rng, now=lambda: "1700000005")

        rng.randrange.assert_not_called()
        self.assertEqual(self.channel.hosts_sent("proposeBlock {cb7}"), self.hosts)

    def test_unknown_proposer(self):
        with self.assertRaises(DesynchronizationError):
            generate_block_to("nobody", self.fleet, self.channel, random.Random(1))


class TestTransactionFanOut(unittest.TestCase):

    def setUp(self):
        self.channel = FakeChannel()
        self.fleet = make_fleet(self.channel)
        self.hosts = [node.host for node in self.fleet]
        self.wallets = [
            WalletNode("addr0", ["u1", "u2", "u3"]),
            WalletNode("addr1", ["v1"]),
            WalletNode("addr2", []),
        ]
        for host, wallet in zip(self.hosts, self.wallets):
            self.channel.on(host, "listUnspentLinkedToMe", wallet.list_unspent)
            self.channel.on(host, "createNewTransaction", wallet.create)
            self.channel.on(host, "printTransaction", wallet.print_transaction)

    def test_keeps_one_output_per_node(self):
        sleep = Mock()
        create_transactions(self.fleet, self.channel, random.Random(3), pause=1, sleep=sleep)

        self.assertEqual(len(self.wallets[0].unspent), 1)
        self.assertEqual(len(self.wallets[1].unspent), 1)
        self.assertEqual(len(self.wallets[0].created), 2)
        self.assertEqual(self.wallets[1].created, {})
        self.assertEqual(sleep.call_count, 2)
        sleep.assert_called_with(1)

    def test_receivers_change_between_transactions(self):
        self.wallets[0] = WalletNode("addr0", [f"u{i}" for i in range(8)])
        self.channel.on(self.hosts[0], "listUnspentLinkedToMe", self.wallets[0].list_unspent)
        self.channel.on(self.hosts[0], "createNewTransaction", self.wallets[0].create)
        self.channel.on(self.hosts[0], "printTransaction", self.wallets[0].print_transaction)

        create_transactions(self.fleet, self.channel, random.Random(11), pause=0, sleep=Mock())

        receivers = [command.split(" ")[3] for command in self.channel.commands_for(self.hosts[0])
                     if command.startswith("createNewTransaction")]
        self.assertEqual(len(receivers), 7)
        for previous, current in zip(receivers, receivers[1:]):
            self.assertNotEqual(previous, current)

    def test_transactions_loaded_on_other_nodes(self):
        create_transactions(self.fleet, self.channel, random.Random(5), pause=0, sleep=Mock())

        loads = [(host, command) for host, command in self.channel.sent if command.startswith("loadTransaction")]
        self.assertEqual(len(loads), 4)
        self.assertEqual({host for host, _ in loads}, {self.hosts[1], self.hosts[2]})
        first_source = loads[0][1].split(" ")
        self.assertEqual(first_source[1:3], ["u1", "addr0"])
        self.assertEqual(first_source[4], "1700000000")


class TestStakes(unittest.TestCase):

    def test_every_node_with_output_stakes_on_all_nodes(self):
        channel = FakeChannel()
        fleet = make_fleet(channel)
        hosts = [node.host for node in fleet]
        channel.on(hosts[0], "listUnspentLinkedToMe", as_json([{"txid": "s0", "address": "addr0"}]))
        channel.on(hosts[1], "listUnspentLinkedToMe", as_json([]))
        channel.on(hosts[2], "listUnspentLinkedToMe", as_json([{"txid": "s2", "address": "addr2"},
                                                               {"txid": "s3", "address": "addr2"}]))

        create_stakes(fleet, channel)

        self.assertEqual(channel.hosts_sent("stake s0 addr0"), hosts)
        self.assertEqual(channel.hosts_sent("stake s2 addr2"), hosts)
        self.assertEqual([c for _, c in channel.sent if c.startswith("stake")],
                         ["stake s0 addr0"] * 3 + ["stake s2 addr2"] * 3)


class TestTimestamp(unittest.TestCase):

    def test_integer_seconds(self):
        self.assertTrue(now_timestamp().isdigit())


if __name__ == "__main__":
    unittest.main()
