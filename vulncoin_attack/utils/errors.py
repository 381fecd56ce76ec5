class HarnessError(RuntimeError):
    """Base class for faults that end the run after stopping every node."""


class ConfigError(HarnessError):
    pass


class TransportError(HarnessError):
    """A node returned an empty reply where one was required."""


class BootstrapTimeout(HarnessError):
    """Nodes did not reach the initial height within the retry budget."""


class DesynchronizationError(HarnessError):
    """Nodes disagree on state that must be identical across the fleet."""
