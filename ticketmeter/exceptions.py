"""Exception hierarchy for ticketmeter."""


class TicketMeterError(Exception):
    """Base exception for all ticketmeter errors."""


class NotFoundError(TicketMeterError):
    """Raised when a plan, subscription or billing record does not exist."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class ConflictError(TicketMeterError):
    """Raised when a write would break a uniqueness rule (e.g. a second live subscription)."""


class InvalidTransitionError(TicketMeterError):
    """Raised when a subscription or billing record cannot move to the requested status."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot transition from {current} to {target}")


class DuplicateEventError(TicketMeterError):
    """Raised internally when a usage event repeats one already in the ledger."""

    def __init__(self, dedupe_key: str) -> None:
        self.dedupe_key = dedupe_key
        super().__init__(f"duplicate usage event: {dedupe_key}")


class ConfigError(TicketMeterError):
    """Raised when configuration is invalid."""
