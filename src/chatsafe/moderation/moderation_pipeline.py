"""
Moderation pipeline: the per-message state machine and the loop that drives it.

Every inbound message goes through four fixed stages:

1. Filter  - the agent's own messages and empty messages end as CLEAN.
2. Classify - ask the classifier. Anything but a flagged verdict ends the
   message as CLEAN (verified or unchecked) or CLASSIFICATION_FAILED.
3. Dispatch - for a flagged verdict, build one Infraction and hand it to the
   reply sink and the ledger at the same time. Neither waits on or cancels
   the other and neither is retried.
4. Record  - exactly one PipelineOutcome is logged, counted and returned.

The consumer loop starts messages in arrival order and lets their side
effects overlap, bounded by ``max_in_flight``. Every external call has a
bounded wait. The ledger wait is bounded with a shield: when the pipeline
stops waiting, the submission itself keeps running to confirmation or
failure and is awaited again on drain, so nothing already broadcast is
abandoned silently.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from chatsafe.configuration.app_configuration import AppConfig, DEFAULT_WARNING_TEMPLATE
from chatsafe.datatypes.moderation_datatypes import (
    DeliveryError,
    InboundMessage,
    Infraction,
    LedgerResult,
    PipelineOutcome,
    RecordReceipt,
    ServiceError,
    SubmissionError,
    Verdict,
)
from chatsafe.moderation.pipeline_stats import PipelineStats, SequenceWatermark
from chatsafe.transport.stream_source import StreamEnded, StreamFatalError, StreamSource
from chatsafe.util.logger import get_logger

logger = get_logger("moderation_pipeline")


@dataclass(frozen=True)
class PipelineSettings:
    """Knobs the pipeline reads; built from AppConfig in production."""
    agent_identity: str
    warning_template: str = DEFAULT_WARNING_TEMPLATE
    classify_timeout: float = 10.0
    reply_timeout: float = 10.0
    ledger_wait_timeout: float = 150.0
    max_in_flight: int = 16
    serialize_per_conversation: bool = False

    @classmethod
    def from_app_config(cls, config: AppConfig, agent_identity: str) -> "PipelineSettings":
        return cls(
            agent_identity=agent_identity,
            warning_template=config.warning_template,
            classify_timeout=config.classifier_timeout,
            reply_timeout=config.reply_timeout,
            ledger_wait_timeout=config.ledger_wait_timeout,
            max_in_flight=config.max_in_flight,
            serialize_per_conversation=config.serialize_per_conversation,
        )


def format_warning(template: str, reason: str) -> str:
    """Insert ``reason`` into the warning template verbatim."""
    return template.replace("{reason}", reason)


class ModerationPipeline:
    """
    Moderation pipeline with injected collaborators.

    Args:
        classifier: Object with ``async classify(text) -> Verdict | ServiceError``.
        ledger: Object with ``async append_infraction(subject, reason) -> RecordReceipt | SubmissionError``.
        reply_sink: Object with ``async reply(conversation_ref, text) -> Ack | DeliveryError``.
        settings: Pipeline settings, including the agent's own identity.
        store: Optional Database for checkpointing and the infraction journal.
    """

    def __init__(
        self,
        classifier: Any,
        ledger: Any,
        reply_sink: Any,
        settings: PipelineSettings,
        *,
        store: Any | None = None,
    ) -> None:
        self._classifier = classifier
        self._ledger = ledger
        self._reply_sink = reply_sink
        self._settings = settings
        self._store = store

        self._agent_identity = settings.agent_identity.casefold()
        self._stats = PipelineStats()
        self._watermark = SequenceWatermark()
        self._seen: Set[int] = set()
        self._slots = asyncio.Semaphore(settings.max_in_flight)
        self._tasks: Set[asyncio.Task] = set()
        self._ledger_submissions: Set[asyncio.Future] = set()
        self._conversation_tails: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def stats(self) -> PipelineStats:
        return self._stats

    @property
    def checkpoint(self) -> int | None:
        return self._watermark.value

    @property
    def pending_ledger_submissions(self) -> int:
        return len(self._ledger_submissions)

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def restore_checkpoint(self) -> int | None:
        """Load the persisted checkpoint (if any) and resume from it."""
        if self._store is None:
            return self._watermark.value
        last_seq = await self._store.load_checkpoint()
        self._watermark = SequenceWatermark(last_seq)
        logger.info("[CHECKPOINT] Resuming after seq=%s", last_seq)
        return last_seq

    async def run(self, source: StreamSource) -> None:
        """Consume ``source`` until it ends, fails, or this task is cancelled.

        In-flight messages and ledger submissions are always drained before
        returning or raising.

        Raises:
            StreamEnded: The source signalled end-of-stream.
            StreamFatalError: The source failed beyond recovery.
        """
        resume_after = await self.restore_checkpoint()
        stream = source.messages(resume_after=resume_after)
        logger.info("[STREAM] Listening for new messages...")

        try:
            async for message in stream:
                await self._slots.acquire()
                task = asyncio.create_task(
                    self._process_in_slot(message),
                    name=f"moderate-seq-{message.arrival_seq}",
                )
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except (StreamEnded, StreamFatalError):
            raise
        except asyncio.CancelledError:
            logger.info("[STREAM] Consumer loop cancelled; draining in-flight work")
            raise
        except Exception as exc:
            logger.critical("[FATAL] Error streaming messages: %s", exc, exc_info=True)
            raise StreamFatalError(str(exc) or type(exc).__name__) from exc
        finally:
            try:
                await stream.aclose()
            except Exception as exc:
                logger.debug("[STREAM] Error closing stream iterator: %s", exc)
            await self.drain()

    async def drain(self) -> None:
        """Wait for every in-flight message and ledger submission to finish."""
        if self._tasks:
            logger.info("[PIPELINE] Waiting for %d in-flight message(s)", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._ledger_submissions:
            logger.info("[LEDGER] Waiting for %d unconfirmed submission(s)", len(self._ledger_submissions))
            await asyncio.gather(*list(self._ledger_submissions), return_exceptions=True)

    async def _process_in_slot(self, message: InboundMessage) -> None:
        try:
            await self.process_message(message)
        except Exception:
            logger.exception("[PIPELINE] Unexpected error processing seq=%d", message.arrival_seq)
        finally:
            self._slots.release()

    # ------------------------------------------------------------------
    # Per-message state machine
    # ------------------------------------------------------------------

    async def process_message(self, message: InboundMessage) -> Optional[PipelineOutcome]:
        """Run one message through the four stages and return its outcome.

        Returns None, without emitting an outcome, for a redelivery of an
        ``arrival_seq`` that was already processed (this run or before the
        checkpoint).
        """
        seq = message.arrival_seq
        if seq in self._seen or self._watermark.is_behind(seq):
            self._stats.duplicates_dropped += 1
            logger.debug("[PIPELINE] Dropping redelivered seq=%d", seq)
            return None

        self._seen.add(seq)
        self._watermark.start(seq)
        self._stats.in_flight += 1

        # Registered before the first await so arrival order decides dispatch order
        previous, turn = self._claim_conversation_turn(message.conversation_ref)

        try:
            outcome = await self._run_stages(message, previous)
        except Exception as exc:
            logger.exception(
                "[PIPELINE] seq=%d sender=%s unexpected error, treated as clean: %s",
                seq,
                message.sender_id,
                exc,
            )
            outcome = PipelineOutcome.CLASSIFICATION_FAILED
        finally:
            self._release_conversation_turn(message.conversation_ref, turn)
            self._stats.in_flight -= 1
            await self._finish_sequence(seq)

        self._stats.record(outcome)
        logger.info(
            "[OUTCOME] seq=%d sender=%s outcome=%s",
            seq,
            message.sender_id,
            outcome,
        )
        return outcome

    async def _run_stages(
        self,
        message: InboundMessage,
        previous_turn: Optional[asyncio.Future],
    ) -> PipelineOutcome:
        # Stage 1: filter self and noise
        if self._is_own_message(message) or not message.content or not message.content.strip():
            return PipelineOutcome.CLEAN

        logger.debug("[MSG] seq=%d %s: %.200r", message.arrival_seq, message.sender_id, message.content)

        # Stage 2: classify
        result = await self._classify(message)
        if isinstance(result, ServiceError):
            return PipelineOutcome.CLASSIFICATION_FAILED
        if not result.checked:
            self._stats.unchecked += 1
            logger.warning(
                "[UNCHECKED] seq=%d sender=%s passed without moderation (%s)",
                message.arrival_seq,
                message.sender_id,
                result.reason,
            )
            return PipelineOutcome.CLEAN
        if not result.flagged:
            logger.debug("[CLASSIFIER] seq=%d verified clean", message.arrival_seq)
            return PipelineOutcome.CLEAN

        # Stage 3: dispatch
        infraction = Infraction(subject=message.sender_id, reason=result.reason)
        logger.warning(
            "[FLAGGED] seq=%d sender=%s reason=%s",
            message.arrival_seq,
            message.sender_id,
            infraction.reason,
        )

        if previous_turn is not None:
            await previous_turn

        reply_ok, ledger_ok = await asyncio.gather(
            self._send_warning(message, infraction),
            self._append_to_ledger(message, infraction),
        )

        # Stage 4: outcome; a missing audit record outranks a missing reply
        if not ledger_ok:
            return PipelineOutcome.FLAGGED_LEDGER_FAILED
        if not reply_ok:
            return PipelineOutcome.FLAGGED_REPLY_FAILED
        return PipelineOutcome.FLAGGED_AND_HANDLED

    def _is_own_message(self, message: InboundMessage) -> bool:
        return message.sender_id.casefold() == self._agent_identity

    async def _classify(self, message: InboundMessage) -> Verdict | ServiceError:
        try:
            result = await asyncio.wait_for(
                self._classifier.classify(message.content),
                timeout=self._settings.classify_timeout,
            )
        except asyncio.TimeoutError:
            result = ServiceError(message=f"timed out after {self._settings.classify_timeout:.1f}s")
        except Exception as exc:
            result = ServiceError(message=str(exc) or type(exc).__name__)

        if not isinstance(result, (Verdict, ServiceError)):
            result = ServiceError(message=f"unexpected classifier result: {result!r}")

        if isinstance(result, ServiceError):
            logger.error(
                "[CLASSIFIER] seq=%d sender=%s classification failed (treated as clean): %s",
                message.arrival_seq,
                message.sender_id,
                result.message,
            )
        return result

    async def _send_warning(self, message: InboundMessage, infraction: Infraction) -> bool:
        text = format_warning(self._settings.warning_template, infraction.reason)
        try:
            result = await asyncio.wait_for(
                self._reply_sink.reply(message.conversation_ref, text),
                timeout=self._settings.reply_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "[REPLY] seq=%d sender=%s warning timed out after %.1fs",
                message.arrival_seq,
                message.sender_id,
                self._settings.reply_timeout,
            )
            return False
        except Exception as exc:
            logger.error(
                "[REPLY] seq=%d sender=%s failed to send warning: %s",
                message.arrival_seq,
                message.sender_id,
                exc,
            )
            return False

        if isinstance(result, DeliveryError):
            logger.error(
                "[REPLY] seq=%d sender=%s failed to send warning: %s",
                message.arrival_seq,
                message.sender_id,
                result.message,
            )
            return False

        logger.info(
            "[REPLY] seq=%d sent warning to %s in conversation %s",
            message.arrival_seq,
            message.sender_id,
            message.conversation_ref,
        )
        return True

    async def _append_to_ledger(self, message: InboundMessage, infraction: Infraction) -> bool:
        entry_id = await self._journal_pending(message.arrival_seq, infraction)

        submission = asyncio.ensure_future(self._submit_infraction(message, infraction, entry_id))
        self._ledger_submissions.add(submission)
        submission.add_done_callback(self._ledger_submissions.discard)

        try:
            result = await asyncio.wait_for(
                asyncio.shield(submission),
                timeout=self._settings.ledger_wait_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "[LEDGER] seq=%d subject=%s no confirmation within %.1fs; submission left to finish in background",
                message.arrival_seq,
                infraction.subject,
                self._settings.ledger_wait_timeout,
            )
            return False

        return isinstance(result, RecordReceipt) and result.confirmed

    async def _submit_infraction(
        self,
        message: InboundMessage,
        infraction: Infraction,
        entry_id: Optional[int],
    ) -> LedgerResult:
        logger.info(
            "[LEDGER] seq=%d logging infraction for %s (reason: %s)",
            message.arrival_seq,
            infraction.subject,
            infraction.reason,
        )
        try:
            result = await self._ledger.append_infraction(infraction.subject, infraction.reason)
        except Exception as exc:
            result = SubmissionError(message=str(exc) or type(exc).__name__)

        if isinstance(result, RecordReceipt) and result.confirmed:
            logger.info(
                "[LEDGER] seq=%d infraction for %s confirmed. Transaction: %s",
                message.arrival_seq,
                infraction.subject,
                result.transaction_ref,
            )
            await self._journal_update(entry_id, result)
        else:
            if isinstance(result, RecordReceipt):
                result = SubmissionError(message="receipt not confirmed", transaction_ref=result.transaction_ref)
            elif not isinstance(result, SubmissionError):
                result = SubmissionError(message=f"unexpected ledger result: {result!r}")
            logger.error(
                "[LEDGER] seq=%d failed to log infraction for %s: %s",
                message.arrival_seq,
                infraction.subject,
                result.message,
            )
            await self._journal_update(entry_id, result)
        return result

    # ------------------------------------------------------------------
    # Ordering within a conversation
    # ------------------------------------------------------------------

    def _claim_conversation_turn(
        self, conversation_ref: str
    ) -> tuple[Optional[asyncio.Future], Optional[asyncio.Future]]:
        if not self._settings.serialize_per_conversation:
            return None, None
        previous = self._conversation_tails.get(conversation_ref)
        turn: asyncio.Future = asyncio.get_running_loop().create_future()
        self._conversation_tails[conversation_ref] = turn
        return previous, turn

    def _release_conversation_turn(self, conversation_ref: str, turn: Optional[asyncio.Future]) -> None:
        if turn is None:
            return
        if not turn.done():
            turn.set_result(None)
        if self._conversation_tails.get(conversation_ref) is turn:
            del self._conversation_tails[conversation_ref]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _finish_sequence(self, seq: int) -> None:
        if not self._watermark.finish(seq):
            return
        # is_behind already rejects everything at or below the watermark
        watermark = self._watermark.value
        self._seen = {pending for pending in self._seen if pending > watermark}
        if self._store is None:
            return
        try:
            await self._store.save_checkpoint(self._watermark.value)
        except Exception as exc:
            logger.error("[CHECKPOINT] Failed to save checkpoint seq=%s: %s", self._watermark.value, exc)

    async def _journal_pending(self, seq: int, infraction: Infraction) -> Optional[int]:
        if self._store is None:
            return None
        try:
            return await self._store.record_pending(seq, infraction)
        except Exception as exc:
            logger.error("[JOURNAL] Failed to journal infraction for seq=%d: %s", seq, exc)
            return None

    async def _journal_update(self, entry_id: Optional[int], result: LedgerResult) -> None:
        if self._store is None or entry_id is None:
            return
        try:
            if isinstance(result, RecordReceipt):
                await self._store.record_confirmed(entry_id, result.transaction_ref)
            else:
                await self._store.record_failed(entry_id, result.message, result.transaction_ref)
        except Exception as exc:
            logger.error("[JOURNAL] Failed to update journal entry %s: %s", entry_id, exc)
