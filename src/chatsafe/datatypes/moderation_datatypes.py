"""
Data structures flowing through the moderation pipeline.

This module defines the values exchanged between the stream source, the
classifier, the ledger and reply sinks, and the per-message outcome tag.
Failure results (ServiceError, SubmissionError, DeliveryError) are plain
values returned by the clients rather than raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, FrozenSet, Union


class PipelineOutcome(Enum):
    """Result tag emitted exactly once per processed message."""

    CLEAN = "clean"
    FLAGGED_AND_HANDLED = "flagged_and_handled"
    FLAGGED_REPLY_FAILED = "flagged_reply_failed"
    FLAGGED_LEDGER_FAILED = "flagged_ledger_failed"
    CLASSIFICATION_FAILED = "classification_failed"

    def __str__(self) -> str:
        return self.value


class ClassifierMode(Enum):
    """Whether the classifier is talking to the service or failing open."""

    ACTIVE = "active"
    DEGRADED = "degraded"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A single message delivered by a stream source.

    Attributes:
        sender_id: Opaque identity of the sender (a hex address on the relay).
        content: Message text, possibly empty.
        conversation_ref: Handle the reply sink uses to answer in the same conversation.
        arrival_seq: Monotonically increasing per-stream sequence number.
    """
    sender_id: str
    content: str
    conversation_ref: str
    arrival_seq: int


@dataclass(frozen=True, slots=True)
class Verdict:
    """Classification result for one message.

    ``checked`` is False when the classifier never consulted the service
    (degraded mode); such a verdict is never flagged.
    """
    flagged: bool
    reason: str = ""
    categories: FrozenSet[str] = frozenset()
    checked: bool = True

    @classmethod
    def clean(cls, categories: FrozenSet[str] = frozenset()) -> "Verdict":
        return cls(flagged=False, reason="", categories=categories)

    @classmethod
    def unchecked(cls, reason: str) -> "Verdict":
        return cls(flagged=False, reason=reason, checked=False)


@dataclass(frozen=True, slots=True)
class ServiceError:
    """The classification service could not produce a verdict."""
    message: str


@dataclass(frozen=True, slots=True)
class Infraction:
    """One policy violation, pending or recorded on the ledger."""
    subject: str
    reason: str
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "reason": self.reason,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class RecordReceipt:
    """Proof that the ledger accepted an append."""
    transaction_ref: str
    confirmed: bool = True
    block_number: int | None = None


@dataclass(frozen=True, slots=True)
class SubmissionError:
    """A ledger append failed or could not be confirmed.

    ``transaction_ref`` is set when the transaction was broadcast before the
    failure, in which case it may still land on the ledger.
    """
    message: str
    transaction_ref: str | None = None


@dataclass(frozen=True, slots=True)
class Ack:
    """The reply was accepted by the transport."""
    message_ref: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryError:
    """The reply could not be delivered."""
    message: str


ClassificationResult = Union[Verdict, ServiceError]
LedgerResult = Union[RecordReceipt, SubmissionError]
ReplyResult = Union[Ack, DeliveryError]
