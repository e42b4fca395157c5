from typing import Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class HydrationSlot(Generic[T]):
    """
    HydrationSlot is the destination state a screen renders from.

    Snapshot hydration and live fetches race each other. Live writers
    take a ticket with begin() before they start their work and hand
    it back with offer(); a live write is applied only when its ticket
    is not older than the ticket of the live value already applied.

    Snapshot writes go through offer_snapshot() and carry no ticket.
    They rank below every live write: a snapshot fills the slot only
    while no live value has been applied, and any live write replaces
    it, whenever its ticket was taken.
    """

    def __init__(
        self,
        initial: "T | None" = None,
        listener: "Callable[[T], None] | None" = None,
    ) -> "None":
        self._value: "T | None" = initial
        self._listener = listener
        self._issued: "int" = 0
        # ticket of the applied live value, 0 while none has been applied
        self._applied: "int" = 0
        self._from_snapshot: "bool" = False

    @property
    def value(self) -> "T | None":
        return self._value

    @property
    def populated(self) -> "bool":
        return self._applied > 0 or self._from_snapshot

    @property
    def live(self) -> "bool":
        return self._applied > 0

    @property
    def applied_sequence(self) -> "int":
        return self._applied

    def begin(self) -> "int":
        """
        issues the next ticket. Tickets increase monotonically.
        """
        self._issued += 1
        return self._issued

    def offer(self, value: "T", sequence: "int") -> "bool":
        """
        applies a live value if sequence is not older than the applied
        one. Returns whether the value was applied.
        """
        if sequence < self._applied:
            logger.debug(
                "hydration_write_discarded",
                sequence=sequence,
                applied=self._applied,
            )
            return False

        self._value = value
        self._applied = sequence
        self._from_snapshot = False
        self._notify(value)
        return True

    def offer_snapshot(self, value: "T") -> "bool":
        """
        applies a snapshot value unless a live value is already in
        place. Returns whether the value was applied.
        """
        if self._applied > 0:
            logger.debug("hydration_snapshot_discarded", applied=self._applied)
            return False

        self._value = value
        self._from_snapshot = True
        self._notify(value)
        return True

    def _notify(self, value: "T") -> "None":
        if self._listener is not None:
            self._listener(value)
