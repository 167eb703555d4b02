"""Error hierarchy for the P4P core."""


class P4PError(Exception):
    """Base class for every error raised by the P4P core."""


class InvalidParameter(P4PError, ValueError):
    """A protocol or function parameter is out of its valid domain."""


class DimensionMismatch(P4PError, ValueError):
    """Vector operands have different lengths."""


class DigestUnavailable(P4PError, RuntimeError):
    """The hash primitive behind hash_to_field cannot be initialised."""


class ProofVerificationFailed(P4PError):
    """A peer's responses or bound proof do not check out against the round challenge."""

    def __init__(self, reason: str, peer_id: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.peer_id = peer_id


class RoundClosed(P4PError, RuntimeError):
    """The round has been finalised; no further submissions are accepted."""


class RoundInProgress(P4PError, RuntimeError):
    """A round is still open or has verifications in flight."""


class AuditMismatch(P4PError, RuntimeError):
    """The two servers disagree on the set of admitted peers."""
