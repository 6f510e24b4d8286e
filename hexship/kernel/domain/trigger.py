"""Change notifications and the receipts returned when they are ingested."""

from __future__ import annotations

from dataclasses import dataclass

from hexship.kernel.domain.run import TriggerContext

STATUS_ACCEPTED = 202
STATUS_DUPLICATE = 409


@dataclass(frozen=True, slots=True)
class TriggerNotification:
    """An external change notification (webhook payload)."""

    repository: str
    branch: str
    change_ref: str
    signature: str = ""
    pipeline: str | None = None

    @property
    def context(self) -> TriggerContext:
        return TriggerContext(
            repository=self.repository, branch=self.branch, change_ref=self.change_ref
        )

    def canonical_payload(self) -> bytes:
        """Bytes covered by the signature."""
        return f"{self.repository}\n{self.branch}\n{self.change_ref}".encode()


@dataclass(frozen=True, slots=True)
class TriggerReceipt:
    """Result of ingesting a notification.

    A duplicate is accepted but points at the run created by the first
    notification.
    """

    run_id: str
    duplicate: bool = False
    accepted: bool = True

    @property
    def status_code(self) -> int:
        return STATUS_DUPLICATE if self.duplicate else STATUS_ACCEPTED
