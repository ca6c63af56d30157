"""Domain exceptions shared across roster-control modules."""


class RosterControlError(Exception):
    """Base class for errors raised by roster-control."""


class InvalidConfidenceError(RosterControlError, ValueError):
    """Raised when an identity-link confidence falls outside [0.0, 1.0]."""

    def __init__(self, confidence: float) -> None:
        super().__init__(f"Link confidence must be within [0.0, 1.0], got {confidence!r}")
        self.confidence = confidence


class RosterFetchError(RosterControlError):
    """Raised when a guild roster could not be fetched completely."""

    def __init__(self, guild_id: str, fetched: int, reason: str) -> None:
        super().__init__(
            f"Roster fetch for guild {guild_id} failed after {fetched} members: {reason}"
        )
        self.guild_id = guild_id
        self.fetched = fetched
        self.reason = reason
