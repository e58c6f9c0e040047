"""Liquidation error taxonomy."""


class LiquidationError(Exception):
    """Base class for errors surfaced by the liquidation orchestrator."""

    pass


class ClaimNotFoundError(LiquidationError):
    """The claim id does not exist."""

    pass


class ClaimConflictError(LiquidationError):
    """The claim is terminal, already being processed, or otherwise not runnable."""

    pass


class InputError(LiquidationError):
    """No usable invoice document or malformed claim data."""

    pass


class LiquidationCancelled(LiquidationError):
    """The claim was marked for deletion while a run was in progress."""

    pass


class ReportGenerationError(LiquidationError):
    """The report artifact could not be produced."""

    pass
