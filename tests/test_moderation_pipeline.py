"""Tests for the moderation pipeline state machine and consumer loop."""

import asyncio
from types import SimpleNamespace

import pytest

from chatsafe.ai.classifier_client import ClassifierClient
from chatsafe.configuration.app_configuration import DEFAULT_WARNING_TEMPLATE
from chatsafe.database.database import Database
from chatsafe.datatypes.moderation_datatypes import (
    Ack,
    DeliveryError,
    InboundMessage,
    PipelineOutcome,
    RecordReceipt,
    ServiceError,
    SubmissionError,
    Verdict,
)
from chatsafe.moderation.moderation_pipeline import (
    ModerationPipeline,
    PipelineSettings,
    format_warning,
)
from chatsafe.transport.stream_source import QueueStreamSource, StreamEnded, StreamFatalError


AGENT = "0xagent"
TOXIC = "<toxic text>"
HARASSMENT = Verdict(flagged=True, reason="harassment", categories=frozenset({"harassment"}))


class FakeClassifier:
    """Returns canned results keyed by content; records every call."""

    def __init__(self, results=None, default=None, delays=None):
        self.results = dict(results or {})
        self.default = default if default is not None else Verdict.clean()
        self.delays = dict(delays or {})
        self.calls = []

    async def classify(self, content):
        self.calls.append(content)
        delay = self.delays.get(content)
        if delay:
            await asyncio.sleep(delay)
        result = self.results.get(content, self.default)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeLedger:
    def __init__(self, result=None, gate=None):
        self.result = result if result is not None else RecordReceipt(transaction_ref="0xabc")
        self.gate = gate
        self.calls = []

    async def append_infraction(self, subject, reason):
        self.calls.append((subject, reason))
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class FakeReplySink:
    def __init__(self, result=None, delay=0.0):
        self.result = result if result is not None else Ack()
        self.delay = delay
        self.calls = []

    async def reply(self, conversation_ref, text):
        self.calls.append((conversation_ref, text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def make_message(seq=1, sender="0xA", content="hello", conversation="conv-1"):
    return InboundMessage(sender_id=sender, content=content, conversation_ref=conversation, arrival_seq=seq)


def make_pipeline(classifier=None, ledger=None, reply_sink=None, store=None, **settings):
    classifier = classifier or FakeClassifier(results={TOXIC: HARASSMENT})
    ledger = ledger or FakeLedger()
    reply_sink = reply_sink or FakeReplySink()
    pipeline = ModerationPipeline(
        classifier,
        ledger,
        reply_sink,
        PipelineSettings(agent_identity=AGENT, **settings),
        store=store,
    )
    return pipeline, classifier, ledger, reply_sink


class TestScenarios:
    """End-to-end behaviour for the reference scenarios."""

    @pytest.mark.asyncio
    async def test_clean_message_has_no_side_effects(self):
        pipeline, classifier, ledger, reply_sink = make_pipeline()

        outcome = await pipeline.process_message(make_message(content="hello"))

        assert outcome is PipelineOutcome.CLEAN
        assert classifier.calls == ["hello"]
        assert ledger.calls == []
        assert reply_sink.calls == []

    @pytest.mark.asyncio
    async def test_flagged_message_is_warned_and_recorded(self):
        pipeline, _, ledger, reply_sink = make_pipeline()

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_AND_HANDLED
        assert ledger.calls == [("0xA", "harassment")]
        assert len(reply_sink.calls) == 1
        conversation_ref, text = reply_sink.calls[0]
        assert conversation_ref == "conv-1"
        assert "harassment" in text

    @pytest.mark.asyncio
    async def test_ledger_failure_still_warns_user(self):
        ledger = FakeLedger(result=SubmissionError(message="execution reverted"))
        pipeline, _, ledger, reply_sink = make_pipeline(ledger=ledger)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_LEDGER_FAILED
        assert len(reply_sink.calls) == 1
        # No automatic retry
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_classifier_credential_passes_everything_unchecked(self):
        classifier = ClassifierClient(None)
        pipeline, _, ledger, reply_sink = make_pipeline(classifier=classifier)

        outcomes = [
            await pipeline.process_message(make_message(seq=seq, content=TOXIC))
            for seq in range(1, 4)
        ]

        assert outcomes == [PipelineOutcome.CLEAN] * 3
        assert pipeline.stats.unchecked == 3
        assert ledger.calls == []
        assert reply_sink.calls == []

    @pytest.mark.asyncio
    async def test_reply_failure_with_ledger_success(self):
        reply_sink = FakeReplySink(result=DeliveryError(message="relay returned HTTP 503"))
        pipeline, _, ledger, _ = make_pipeline(reply_sink=reply_sink)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_REPLY_FAILED
        assert ledger.calls == [("0xA", "harassment")]

    @pytest.mark.asyncio
    async def test_flagged_through_real_classifier_client(self):
        """The reason reaching both sinks is built from the service's flagged categories."""
        categories = {"harassment": True, "violence": True, "self-harm": False}
        response = SimpleNamespace(results=[SimpleNamespace(flagged=True, categories=categories)])

        async def create(**kwargs):
            return response

        openai_client = SimpleNamespace(moderations=SimpleNamespace(create=create))
        classifier = ClassifierClient("sk-test", client=openai_client)
        pipeline, _, ledger, reply_sink = make_pipeline(classifier=classifier)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_AND_HANDLED
        assert ledger.calls == [("0xA", "harassment, violence")]
        assert "harassment, violence" in reply_sink.calls[0][1]


class TestFilterStage:
    """Self and empty messages never reach classification."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    async def test_empty_content_is_clean_without_classification(self, content):
        pipeline, classifier, _, _ = make_pipeline()

        outcome = await pipeline.process_message(make_message(content=content))

        assert outcome is PipelineOutcome.CLEAN
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_own_message_is_clean_without_classification(self):
        pipeline, classifier, ledger, reply_sink = make_pipeline()

        outcome = await pipeline.process_message(make_message(sender=AGENT, content=TOXIC))

        assert outcome is PipelineOutcome.CLEAN
        assert classifier.calls == []
        assert ledger.calls == []
        assert reply_sink.calls == []

    @pytest.mark.asyncio
    async def test_own_identity_comparison_ignores_case(self):
        pipeline, classifier, _, _ = make_pipeline()

        outcome = await pipeline.process_message(make_message(sender=AGENT.upper(), content=TOXIC))

        assert outcome is PipelineOutcome.CLEAN
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_own_warning_reply_is_not_reclassified(self):
        """The agent's own warning, re-ingested from the stream, ends at the filter."""
        pipeline, classifier, _, reply_sink = make_pipeline()
        await pipeline.process_message(make_message(seq=1, content=TOXIC))
        warning_text = reply_sink.calls[0][1]

        outcome = await pipeline.process_message(make_message(seq=2, sender=AGENT, content=warning_text))

        assert outcome is PipelineOutcome.CLEAN
        assert classifier.calls == [TOXIC]


class TestClassificationStage:
    @pytest.mark.asyncio
    async def test_service_error_is_classification_failed(self):
        classifier = FakeClassifier(default=ServiceError(message="HTTP 500"))
        pipeline, _, ledger, reply_sink = make_pipeline(classifier=classifier)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.CLASSIFICATION_FAILED
        assert ledger.calls == []
        assert reply_sink.calls == []

    @pytest.mark.asyncio
    async def test_classifier_exception_is_classification_failed(self):
        classifier = FakeClassifier(default=RuntimeError("connection reset"))
        pipeline, _, ledger, _ = make_pipeline(classifier=classifier)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.CLASSIFICATION_FAILED
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_classifier_timeout_is_classification_failed(self):
        classifier = FakeClassifier(results={TOXIC: HARASSMENT}, delays={TOXIC: 5})
        pipeline, _, ledger, _ = make_pipeline(classifier=classifier, classify_timeout=0.05)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.CLASSIFICATION_FAILED
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_degraded_verdict_is_never_classification_failed(self):
        classifier = FakeClassifier(default=Verdict.unchecked("classifier unavailable"))
        pipeline, _, _, _ = make_pipeline(classifier=classifier)

        outcome = await pipeline.process_message(make_message(content="anything"))

        assert outcome is PipelineOutcome.CLEAN
        assert pipeline.stats.unchecked == 1
        assert pipeline.stats.outcomes[PipelineOutcome.CLASSIFICATION_FAILED] == 0

    @pytest.mark.asyncio
    async def test_verified_clean_is_not_counted_as_unchecked(self):
        pipeline, _, _, _ = make_pipeline()

        await pipeline.process_message(make_message(content="hello"))

        assert pipeline.stats.unchecked == 0

    @pytest.mark.asyncio
    async def test_unexpected_classifier_result_is_classification_failure(self):
        classifier = FakeClassifier(results={"odd": "not a verdict"})
        pipeline, _, ledger, reply_sink = make_pipeline(classifier=classifier)

        outcome = await pipeline.process_message(make_message(content="odd"))

        assert outcome is PipelineOutcome.CLASSIFICATION_FAILED
        assert ledger.calls == []
        assert reply_sink.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_error_still_yields_one_outcome(self, monkeypatch):
        pipeline, _, _, _ = make_pipeline()

        async def explode(message, previous_turn):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(pipeline, "_run_stages", explode)

        outcome = await pipeline.process_message(make_message(seq=1, content=TOXIC))

        assert outcome is PipelineOutcome.CLASSIFICATION_FAILED
        assert pipeline.stats.processed == 1
        assert pipeline.stats.outcomes[PipelineOutcome.CLASSIFICATION_FAILED] == 1
        assert pipeline.stats.in_flight == 0
        assert pipeline.checkpoint == 1


class TestDispatchStage:
    """Reply and ledger are independent attempts against one infraction."""

    @pytest.mark.asyncio
    async def test_both_sinks_failing_reports_ledger_failure(self):
        ledger = FakeLedger(result=SubmissionError(message="nonce too low"))
        reply_sink = FakeReplySink(result=DeliveryError(message="conversation closed"))
        pipeline, _, _, _ = make_pipeline(ledger=ledger, reply_sink=reply_sink)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_LEDGER_FAILED
        assert len(ledger.calls) == 1
        assert len(reply_sink.calls) == 1

    @pytest.mark.asyncio
    async def test_reply_exception_does_not_stop_ledger(self):
        reply_sink = FakeReplySink(result=ConnectionError("relay unreachable"))
        pipeline, _, ledger, _ = make_pipeline(reply_sink=reply_sink)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_REPLY_FAILED
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_ledger_exception_does_not_stop_reply(self):
        ledger = FakeLedger(result=RuntimeError("rpc down"))
        pipeline, _, ledger, reply_sink = make_pipeline(ledger=ledger)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_LEDGER_FAILED
        assert len(ledger.calls) == 1
        assert len(reply_sink.calls) == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_receipt_is_ledger_failure(self):
        ledger = FakeLedger(result=RecordReceipt(transaction_ref="0xdef", confirmed=False))
        pipeline, _, _, _ = make_pipeline(ledger=ledger)

        outcome = await pipeline.process_message(make_message(content=TOXIC))

        assert outcome is PipelineOutcome.FLAGGED_LEDGER_FAILED

    @pytest.mark.asyncio
    async def test_hanging_reply_does_not_stall_ledger(self):
        reply_sink = FakeReplySink(delay=5)
        pipeline, _, ledger, _ = make_pipeline(reply_sink=reply_sink, reply_timeout=0.05)

        outcome = await asyncio.wait_for(pipeline.process_message(make_message(content=TOXIC)), timeout=2)

        assert outcome is PipelineOutcome.FLAGGED_REPLY_FAILED
        assert ledger.calls == [("0xA", "harassment")]

    @pytest.mark.asyncio
    async def test_ledger_wait_timeout_keeps_submission_running(self):
        gate = asyncio.Event()
        ledger = FakeLedger(gate=gate)
        pipeline, _, _, reply_sink = make_pipeline(ledger=ledger, ledger_wait_timeout=0.05)

        outcome = await asyncio.wait_for(pipeline.process_message(make_message(content=TOXIC)), timeout=2)

        assert outcome is PipelineOutcome.FLAGGED_LEDGER_FAILED
        assert len(reply_sink.calls) == 1
        assert pipeline.pending_ledger_submissions == 1

        gate.set()
        await pipeline.drain()

        assert pipeline.pending_ledger_submissions == 0
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_warning_uses_configured_template(self):
        pipeline, _, _, reply_sink = make_pipeline(warning_template="Flagged for {reason}.")

        await pipeline.process_message(make_message(content=TOXIC))

        assert reply_sink.calls[0][1] == "Flagged for harassment."


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_redelivered_message_is_dropped(self):
        pipeline, _, ledger, reply_sink = make_pipeline()
        message = make_message(content=TOXIC)

        first = await pipeline.process_message(message)
        second = await pipeline.process_message(message)

        assert first is PipelineOutcome.FLAGGED_AND_HANDLED
        assert second is None
        assert len(ledger.calls) == 1
        assert len(reply_sink.calls) == 1
        assert pipeline.stats.duplicates_dropped == 1
        assert pipeline.stats.processed == 1

    @pytest.mark.asyncio
    async def test_each_flagged_message_gets_one_ledger_call(self):
        pipeline, _, ledger, _ = make_pipeline()

        await asyncio.gather(*(
            pipeline.process_message(make_message(seq=seq, sender=f"0x{seq}", content=TOXIC))
            for seq in range(1, 6)
        ))

        subjects = [subject for subject, _ in ledger.calls]
        assert sorted(subjects) == [f"0x{seq}" for seq in range(1, 6)]

    @pytest.mark.asyncio
    async def test_exactly_one_outcome_per_message(self):
        classifier = FakeClassifier(results={TOXIC: HARASSMENT, "broken": ServiceError(message="boom")})
        pipeline, _, _, _ = make_pipeline(classifier=classifier)

        contents = ["hello", TOXIC, "", "broken", TOXIC]
        for seq, content in enumerate(contents, start=1):
            await pipeline.process_message(make_message(seq=seq, content=content))

        assert pipeline.stats.processed == len(contents)
        assert pipeline.stats.outcomes[PipelineOutcome.CLEAN] == 2
        assert pipeline.stats.outcomes[PipelineOutcome.FLAGGED_AND_HANDLED] == 2
        assert pipeline.stats.outcomes[PipelineOutcome.CLASSIFICATION_FAILED] == 1

    @pytest.mark.asyncio
    async def test_seen_set_stays_bounded_over_long_runs(self):
        pipeline, _, _, _ = make_pipeline()

        for seq in range(1, 2001):
            await pipeline.process_message(make_message(seq=seq, content=f"message {seq}"))

        assert pipeline.checkpoint == 2000
        assert len(pipeline._seen) == 0
        assert await pipeline.process_message(make_message(seq=17, content="message 17")) is None
        assert pipeline.stats.duplicates_dropped == 1

    @pytest.mark.asyncio
    async def test_seen_set_keeps_sequences_past_a_gap(self):
        classifier = FakeClassifier(delays={"slow": 0.05})
        pipeline, _, _, _ = make_pipeline(classifier=classifier)

        slow = asyncio.create_task(pipeline.process_message(make_message(seq=1, content="slow")))
        await asyncio.sleep(0)
        await pipeline.process_message(make_message(seq=2, content="fast"))

        assert pipeline._seen == {1, 2}
        assert await pipeline.process_message(make_message(seq=2, content="fast")) is None

        await slow
        assert pipeline.checkpoint == 2
        assert pipeline._seen == set()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_next_message_classifies_while_side_effects_run(self):
        gate = asyncio.Event()
        pipeline, classifier, ledger, _ = make_pipeline(ledger=FakeLedger(gate=gate))

        first = asyncio.create_task(pipeline.process_message(make_message(seq=1, content=TOXIC)))
        await asyncio.sleep(0.01)
        second = await pipeline.process_message(make_message(seq=2, content="hello"))

        assert second is PipelineOutcome.CLEAN
        assert not first.done()
        assert classifier.calls == [TOXIC, "hello"]

        gate.set()
        assert await first is PipelineOutcome.FLAGGED_AND_HANDLED

    @pytest.mark.asyncio
    async def test_serialized_conversation_keeps_reply_order(self):
        violence = Verdict(flagged=True, reason="violence", categories=frozenset({"violence"}))
        classifier = FakeClassifier(results={"first": HARASSMENT, "second": violence}, delays={"first": 0.05})
        pipeline, _, _, reply_sink = make_pipeline(classifier=classifier, serialize_per_conversation=True)

        await asyncio.gather(
            pipeline.process_message(make_message(seq=1, content="first")),
            pipeline.process_message(make_message(seq=2, content="second")),
        )

        texts = [text for _, text in reply_sink.calls]
        assert "harassment" in texts[0]
        assert "violence" in texts[1]

    @pytest.mark.asyncio
    async def test_unserialized_side_effects_may_overtake(self):
        violence = Verdict(flagged=True, reason="violence", categories=frozenset({"violence"}))
        classifier = FakeClassifier(results={"first": HARASSMENT, "second": violence}, delays={"first": 0.05})
        pipeline, _, _, reply_sink = make_pipeline(classifier=classifier)

        await asyncio.gather(
            pipeline.process_message(make_message(seq=1, content="first")),
            pipeline.process_message(make_message(seq=2, content="second")),
        )

        texts = [text for _, text in reply_sink.calls]
        assert "violence" in texts[0]
        assert "harassment" in texts[1]

    @pytest.mark.asyncio
    async def test_max_in_flight_bounds_concurrency(self):
        active = 0
        peak = 0

        class CountingClassifier:
            async def classify(self, content):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return Verdict.clean()

        pipeline, _, _, _ = make_pipeline(classifier=CountingClassifier(), max_in_flight=2)
        source = QueueStreamSource()
        for index in range(6):
            source.publish("0xA", f"message {index}")
        source.end()

        with pytest.raises(StreamEnded):
            await pipeline.run(source)

        assert peak <= 2
        assert pipeline.stats.processed == 6

    @pytest.mark.asyncio
    async def test_run_classifies_in_publish_order(self):
        contents = [f"message {index}" for index in range(8)]
        delays = {content: 0.04 - index * 0.005 for index, content in enumerate(contents)}
        classifier = FakeClassifier(delays=delays)
        pipeline, _, _, _ = make_pipeline(classifier=classifier, max_in_flight=4)
        source = QueueStreamSource()
        for content in contents:
            source.publish("0xA", content)
        source.end()

        with pytest.raises(StreamEnded):
            await pipeline.run(source)

        assert classifier.calls == contents
        assert pipeline.stats.processed == len(contents)
        assert pipeline.checkpoint == len(contents)


class TestConsumerLoop:
    @pytest.mark.asyncio
    async def test_run_drains_in_flight_work_before_end(self):
        pipeline, _, ledger, _ = make_pipeline()
        source = QueueStreamSource()
        source.publish("0xA", TOXIC)
        source.publish("0xB", "hello")
        source.end()

        with pytest.raises(StreamEnded):
            await pipeline.run(source)

        assert pipeline.stats.processed == 2
        assert pipeline.stats.outcomes[PipelineOutcome.FLAGGED_AND_HANDLED] == 1
        assert ledger.calls == [("0xA", "harassment")]
        assert pipeline.checkpoint == 2

    @pytest.mark.asyncio
    async def test_run_surfaces_fatal_stream_error(self):
        pipeline, _, _, _ = make_pipeline()
        source = QueueStreamSource()
        source.publish("0xA", TOXIC)
        source.fail("connection lost")

        with pytest.raises(StreamFatalError, match="connection lost"):
            await pipeline.run(source)

        assert pipeline.stats.outcomes[PipelineOutcome.FLAGGED_AND_HANDLED] == 1

    @pytest.mark.asyncio
    async def test_run_drops_redelivered_messages(self):
        pipeline, _, ledger, _ = make_pipeline()
        source = QueueStreamSource()
        message = source.publish("0xA", TOXIC)
        source.redeliver(message)
        source.end()

        with pytest.raises(StreamEnded):
            await pipeline.run(source)

        assert len(ledger.calls) == 1
        assert pipeline.stats.duplicates_dropped == 1

    @pytest.mark.asyncio
    async def test_cancelled_run_still_drains(self):
        gate = asyncio.Event()
        pipeline, _, ledger, _ = make_pipeline(ledger=FakeLedger(gate=gate))
        source = QueueStreamSource()
        source.publish("0xA", TOXIC)

        run_task = asyncio.create_task(pipeline.run(source))
        await asyncio.sleep(0.05)
        assert len(ledger.calls) == 1

        run_task.cancel()
        await asyncio.sleep(0.01)
        assert not run_task.done()

        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await run_task
        assert pipeline.stats.outcomes[PipelineOutcome.FLAGGED_AND_HANDLED] == 1


class TestCheckpointing:
    @pytest.mark.asyncio
    async def test_restart_resumes_after_checkpoint(self, tmp_path):
        db_path = tmp_path / "chatsafe.db"

        database = Database(db_path)
        await database.initialize()
        try:
            pipeline, _, ledger, _ = make_pipeline(store=database)
            source = QueueStreamSource()
            first_run = [source.publish("0xA", TOXIC), source.publish("0xB", "hello")]
            source.end()
            with pytest.raises(StreamEnded):
                await pipeline.run(source)
            assert await database.load_checkpoint() == 2
        finally:
            await database.shutdown()

        database = Database(db_path)
        await database.initialize()
        try:
            pipeline, _, ledger, _ = make_pipeline(store=database)
            assert await pipeline.restore_checkpoint() == 2

            replayed = await pipeline.process_message(first_run[0])
            fresh = await pipeline.process_message(make_message(seq=3, sender="0xC", content=TOXIC))

            assert replayed is None
            assert fresh is PipelineOutcome.FLAGGED_AND_HANDLED
            assert ledger.calls == [("0xC", "harassment")]
            assert await database.load_checkpoint() == 3
        finally:
            await database.shutdown()

    @pytest.mark.asyncio
    async def test_checkpoint_waits_for_slow_earlier_message(self, tmp_path):
        database = Database(tmp_path / "chatsafe.db")
        await database.initialize()
        try:
            gate = asyncio.Event()
            pipeline, _, _, _ = make_pipeline(ledger=FakeLedger(gate=gate), store=database)

            slow = asyncio.create_task(pipeline.process_message(make_message(seq=1, content=TOXIC)))
            await asyncio.sleep(0.01)
            await pipeline.process_message(make_message(seq=2, content="hello"))

            assert pipeline.checkpoint is None
            assert await database.load_checkpoint() is None

            gate.set()
            await slow
            assert await database.load_checkpoint() == 2
        finally:
            await database.shutdown()

    @pytest.mark.asyncio
    async def test_ledger_results_are_journaled(self, tmp_path):
        database = Database(tmp_path / "chatsafe.db")
        await database.initialize()
        try:
            classifier = FakeClassifier(results={TOXIC: HARASSMENT, "bad": HARASSMENT})
            ledger = FakeLedger()
            pipeline, _, _, _ = make_pipeline(classifier=classifier, ledger=ledger, store=database)

            await pipeline.process_message(make_message(seq=1, content=TOXIC))
            ledger.result = SubmissionError(message="transaction reverted", transaction_ref="0xfeed")
            await pipeline.process_message(make_message(seq=2, sender="0xB", content="bad"))

            entries = await database.unresolved_entries()
            assert len(entries) == 1
            assert entries[0].status == "failed"
            assert entries[0].arrival_seq == 2
            assert entries[0].transaction_ref == "0xfeed"
            assert entries[0].error == "transaction reverted"
        finally:
            await database.shutdown()


class TestFormatWarning:
    def test_default_template_carries_reason(self):
        text = format_warning(DEFAULT_WARNING_TEMPLATE, "harassment, violence")
        assert text.endswith("Reason: harassment, violence")
        assert text.startswith("🚨 ChatSafe Warning")

    def test_reason_with_braces_is_inserted_verbatim(self):
        assert format_warning("Reason: {reason}", "{weird}") == "Reason: {weird}"


class TestPipelineSettings:
    def test_from_app_config(self, tmp_path):
        from chatsafe.configuration.app_configuration import AppConfig

        config_path = tmp_path / "app_config.yml"
        config_path.write_text(
            "classifier:\n  timeout_seconds: 3\n"
            "pipeline:\n  max_in_flight: 4\n  serialize_per_conversation: true\n"
            "ledger:\n  wait_timeout_seconds: 60\n",
            encoding="utf-8",
        )

        settings = PipelineSettings.from_app_config(AppConfig(config_path), AGENT)

        assert settings.agent_identity == AGENT
        assert settings.classify_timeout == pytest.approx(3.0)
        assert settings.max_in_flight == 4
        assert settings.serialize_per_conversation is True
        assert settings.ledger_wait_timeout == pytest.approx(60.0)
        assert settings.warning_template == DEFAULT_WARNING_TEMPLATE
