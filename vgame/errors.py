class VGameError(Exception):
    pass


class InvalidResize(VGameError):
    """The trace cannot be resized to the requested length (only shrinking is supported)."""


class NotALeafPair(VGameError):
    """A step proof was requested between two nodes that are not both leaves."""


class SelfCheckFailed(VGameError):
    """A locally computed result proof does not verify against its own root."""


class LedgerRejected(VGameError):
    """A ledger call reverted."""


class Desynchronized(VGameError):
    """A round references hashes that are not in the local tree, and cannot be reconciled."""
