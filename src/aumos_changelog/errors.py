"""Error hierarchy for aumos-changelog.

Queue claim conflicts are deliberately absent: losing a claim race is an
expected outcome and never surfaces as an exception.
"""


class ChangelogError(Exception):
    """Base class for all changelog errors."""


class NotFoundError(ChangelogError):
    """A requested resource does not exist.

    Args:
        resource: Resource kind, e.g. ``AlertRule``.
        resource_id: Identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class ValidationError(ChangelogError):
    """Input failed a business rule."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConflictError(ChangelogError):
    """A uniquely named resource already exists."""


class CaptureFailure(ChangelogError):
    """Diffing, redaction or the audit write failed during interception.

    In strict mode this aborts the triggering mutation.
    """

    def __init__(self, entity: str, row_identity: str, operation: str, reason: str) -> None:
        self.entity = entity
        self.row_identity = row_identity
        self.operation = operation
        super().__init__(f"Capture failed for {operation} on {entity}/{row_identity}: {reason}")


class ReconstructionError(ChangelogError):
    """The changelog for a row cannot be replayed consistently."""


class ReconstructionAmbiguity(ReconstructionError):
    """Two records share the full ordering key (captured_at, transaction_id, sequence)."""


class ReconstructionIntegrityError(ReconstructionError):
    """The recorded lifecycle of a row contradicts itself."""


class ReconstructionHorizonError(ReconstructionError):
    """Changes after the target time sit in a partition that was archived or dropped.

    Args:
        partition: The retired partition.
        horizon: End of the retired range; answers are only possible at or after it.
    """

    def __init__(self, partition: str, horizon: str) -> None:
        self.partition = partition
        self.horizon = horizon
        super().__init__(
            f"History before {horizon} is no longer in the hot changelog "
            f"(partition {partition} was retired)"
        )


class AlertEvaluationError(ChangelogError):
    """Evaluating a single alert rule failed."""

    def __init__(self, rule_name: str, reason: str) -> None:
        self.rule_name = rule_name
        self.reason = reason
        super().__init__(f"Alert rule {rule_name!r} failed: {reason}")


class RetentionError(ChangelogError):
    """Archiving or dropping a partition failed; the partition is retained."""

    def __init__(self, partition: str, attempts: int, reason: str) -> None:
        self.partition = partition
        self.attempts = attempts
        super().__init__(
            f"Retention of partition {partition} failed after {attempts} attempt(s): {reason}"
        )
