"""
Unit tests for the poll scheduler state machine.
"""

import asyncio

import pytest

from src.core.enums import (
    CommunicationStatus,
    CommunicationType,
    ErrorKind,
    FinalResponseStatus,
    PollOutcome,
    PollState,
    ResponseCode,
    SubjectType,
)
from src.gateways.nphies_gateway import TransportError
from src.services.nphies.errors import PollInProgressError, SubjectNotFoundError
from src.services.nphies.poll_scheduler import (
    PollEvent,
    PollScheduler,
    PollSchedulerRegistry,
    VALID_TRANSITIONS,
)
from src.services.nphies.records import CommunicationRecord, SubjectRef
from tests.fixtures.nphies_bundles import (
    claim_response,
    communication_ack_task,
    communication_request,
    nested_message,
    operation_outcome,
    response_bundle,
)


def _sent(communication_id="COMM-1", communication_type=CommunicationType.UNSOLICITED):
    return CommunicationRecord(
        communication_id=communication_id,
        subject_type=SubjectType.CLAIM,
        subject_id="CLM-1001",
        communication_type=communication_type,
        status=CommunicationStatus.COMPLETED,
        acknowledgment_received=True,
        acknowledgment_status=ResponseCode.OK,
    )


def _ack_response(communication_id="COMM-1"):
    return response_bundle(nested_message(communication_ack_task(communication_id)))


def _final_response(status="approved"):
    return response_bundle(nested_message(claim_response(status=status, disposition=None)))


@pytest.fixture
def scheduler(claim_ref, mock_store, mock_gateway, composer, nphies_settings):
    return PollScheduler(
        claim_ref,
        store=mock_store,
        gateway=mock_gateway,
        composer=composer,
        settings=nphies_settings,
    )


@pytest.mark.unit
class TestTransitions:
    """Transition table"""

    def test_cancel_allowed_from_every_state(self):
        cancel_sources = {t.from_state for t in VALID_TRANSITIONS if t.event == PollEvent.CANCEL}
        assert cancel_sources == set(PollState)

    def test_deferred_poll_only_from_waiting(self):
        sources = {t.from_state for t in VALID_TRANSITIONS if t.event == PollEvent.DEFERRED_POLL}
        assert sources == {PollState.ACKNOWLEDGED_WAITING_FINAL}

    def test_initial_state(self, scheduler):
        assert scheduler.state == PollState.IDLE
        assert PollEvent.POLL in scheduler.get_valid_events()
        assert PollEvent.QUEUED not in scheduler.get_valid_events()

    def test_callback_error_does_not_block_transition(self, scheduler):
        seen = []

        def broken(*_args):
            raise RuntimeError("callback failed")

        scheduler.register_callback(broken)
        scheduler.register_callback(lambda subject, old, new, event: seen.append((old, new, event)))
        scheduler.cancel()

        assert scheduler.state == PollState.IDLE
        assert seen == [(PollState.IDLE, PollState.IDLE, PollEvent.CANCEL)]


@pytest.mark.unit
class TestPollCycle:
    """Single poll cycles"""

    @pytest.mark.asyncio
    async def test_final_response_goes_done(self, scheduler, mock_gateway, mock_store):
        mock_gateway.process_message.return_value = _final_response("approved")

        result = await scheduler.poll()

        assert result.outcome == PollOutcome.FINAL_RESPONSE
        assert result.state == PollState.DONE
        assert result.final_response_status == FinalResponseStatus.APPROVED
        assert result.auto_poll_scheduled is False
        assert not scheduler.has_pending_auto_poll
        mock_store.record_final_response.assert_awaited_once()
        args = mock_store.record_final_response.await_args.args
        assert args[1] == FinalResponseStatus.APPROVED

    @pytest.mark.asyncio
    async def test_poll_bundle_is_server_built(self, scheduler, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(code="queued")

        result = await scheduler.poll()

        sent_bundle = mock_gateway.process_message.await_args.args[0]
        task = sent_bundle["entry"][1]["resource"]
        assert task["requester"]["identifier"]["value"] == "PR-FHIR"
        assert result.request_bundle is sent_bundle

    @pytest.mark.asyncio
    async def test_queued_returns_to_idle(self, scheduler, mock_gateway, mock_store):
        mock_gateway.process_message.return_value = response_bundle(code="queued")

        result = await scheduler.poll()

        assert result.outcome == PollOutcome.QUEUED
        assert result.state == PollState.IDLE
        assert result.error is None
        mock_store.upsert_communication_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_communication_request_is_stored(self, scheduler, mock_gateway, mock_store, claim_ref):
        mock_gateway.process_message.return_value = response_bundle(
            nested_message(communication_request("CR-5"))
        )

        result = await scheduler.poll()

        assert result.outcome == PollOutcome.NOTHING_FINAL
        assert result.state == PollState.IDLE
        stored = mock_store.upsert_communication_request.await_args.args[0]
        assert stored.request_id == "CR-5"
        assert (stored.subject_type, stored.subject_id) == (claim_ref.subject_type, claim_ref.subject_id)
        assert [r.request_id for r in result.communication_requests] == ["CR-5"]

    @pytest.mark.asyncio
    async def test_fatal_error(self, scheduler, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(
            operation_outcome(), code="fatal-error"
        )

        result = await scheduler.poll()

        assert result.outcome == PollOutcome.EXCHANGE_ERROR
        assert result.state == PollState.ERROR
        assert result.retryable is False
        assert result.error.kind == ErrorKind.EXCHANGE
        assert result.error.http_status == 502
        assert result.errors[0].code == "GE-00013"

    @pytest.mark.asyncio
    async def test_transient_error_is_retryable(self, scheduler, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(code="transient-error")

        result = await scheduler.poll()

        assert result.retryable is True
        assert result.error.http_status == 503

    @pytest.mark.asyncio
    async def test_transport_error(self, scheduler, mock_gateway):
        mock_gateway.process_message.side_effect = TransportError(
            "NPHIES returned HTTP 500", status_code=500, body={"message": "down"}
        )

        result = await scheduler.poll()

        assert result.outcome == PollOutcome.TRANSPORT_ERROR
        assert result.state == PollState.ERROR
        assert result.error.kind == ErrorKind.TRANSPORT
        assert result.error.details["status_code"] == 500
        assert scheduler.status().last_error.kind == ErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_poll_again_after_error(self, scheduler, mock_gateway):
        mock_gateway.process_message.side_effect = [
            TransportError("unreachable"),
            response_bundle(code="queued"),
        ]
        await scheduler.poll()
        result = await scheduler.poll()

        assert result.state == PollState.IDLE
        assert scheduler.status().last_error is None

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, scheduler, mock_gateway):
        mock_gateway.process_message.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            await scheduler.poll()
        assert scheduler.state == PollState.ERROR

    @pytest.mark.asyncio
    async def test_unknown_subject(self, scheduler, mock_store, mock_gateway):
        mock_store.get_subject.return_value = None

        with pytest.raises(SubjectNotFoundError):
            await scheduler.poll()
        assert scheduler.state == PollState.IDLE
        mock_gateway.process_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_lists_valid_events(self, scheduler, mock_gateway):
        mock_gateway.process_message.return_value = _final_response()

        await scheduler.poll()

        status = scheduler.status()
        assert status.state == PollState.DONE
        assert set(status.valid_events) == {PollEvent.POLL, PollEvent.CANCEL}

    @pytest.mark.asyncio
    async def test_unknown_subject_restores_prior_state(self, scheduler, mock_store, mock_gateway):
        mock_gateway.process_message.return_value = _final_response()
        await scheduler.poll()
        mock_store.get_subject.return_value = None

        with pytest.raises(SubjectNotFoundError):
            await scheduler.poll()

        assert scheduler.state == PollState.DONE
        assert mock_gateway.process_message.await_count == 1

    @pytest.mark.asyncio
    async def test_poll_in_progress(self, scheduler, mock_gateway):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(*_args, **_kwargs):
            started.set()
            await release.wait()
            return response_bundle(code="queued")

        mock_gateway.process_message.side_effect = slow
        first = asyncio.create_task(scheduler.poll())
        await started.wait()

        with pytest.raises(PollInProgressError):
            await scheduler.poll()

        release.set()
        assert (await first).outcome == PollOutcome.QUEUED

    @pytest.mark.asyncio
    async def test_cancel_discards_inflight_result(self, scheduler, mock_gateway, mock_store):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(*_args, **_kwargs):
            started.set()
            await release.wait()
            return response_bundle(nested_message(communication_request("CR-8")))

        mock_gateway.process_message.side_effect = slow
        inflight = asyncio.create_task(scheduler.poll())
        await started.wait()

        scheduler.cancel()
        release.set()
        result = await inflight

        assert result.outcome == PollOutcome.CANCELLED
        assert scheduler.state == PollState.IDLE
        # what arrived is still persisted
        mock_store.upsert_communication_request.assert_awaited_once()


@pytest.mark.unit
class TestAutoPoll:
    """Deferred re-poll after an acknowledgment"""

    @pytest.mark.asyncio
    async def test_acknowledgment_schedules_one_deferred_poll(self, scheduler, mock_gateway, mock_store):
        mock_store.mark_acknowledged.return_value = _sent()
        mock_gateway.process_message.side_effect = [_ack_response(), _final_response("approved")]

        result = await scheduler.poll()

        assert result.outcome == PollOutcome.ACKNOWLEDGED
        assert result.state == PollState.ACKNOWLEDGED_WAITING_FINAL
        assert result.auto_poll_scheduled is True
        assert scheduler.has_pending_auto_poll
        assert scheduler.status().auto_poll_due_at is not None

        await asyncio.sleep(0.2)

        assert mock_gateway.process_message.await_count == 2
        assert scheduler.state == PollState.DONE
        assert scheduler.status().final_response_status == FinalResponseStatus.APPROVED
        assert not scheduler.has_pending_auto_poll

    @pytest.mark.asyncio
    async def test_cancel_prevents_deferred_poll(self, scheduler, mock_gateway, mock_store, nphies_settings):
        nphies_settings.AUTO_POLL_DELAY_SECONDS = 0.2
        mock_store.mark_acknowledged.return_value = _sent()
        mock_gateway.process_message.return_value = _ack_response()

        await scheduler.poll()
        assert scheduler.cancel() is True
        await asyncio.sleep(0.3)

        assert mock_gateway.process_message.await_count == 1
        assert scheduler.state == PollState.IDLE
        assert not scheduler.has_pending_auto_poll

    @pytest.mark.asyncio
    async def test_manual_poll_replaces_timer(self, scheduler, mock_gateway, mock_store, nphies_settings):
        nphies_settings.AUTO_POLL_DELAY_SECONDS = 0.2
        mock_store.mark_acknowledged.return_value = _sent()
        mock_gateway.process_message.side_effect = [_ack_response(), _final_response()]

        await scheduler.poll()
        result = await scheduler.poll()
        await asyncio.sleep(0.3)

        assert result.state == PollState.DONE
        assert mock_gateway.process_message.await_count == 2

    @pytest.mark.asyncio
    async def test_disabled_auto_poll(self, scheduler, mock_gateway, mock_store, nphies_settings):
        nphies_settings.AUTO_POLL_AFTER_ACKNOWLEDGMENT = False
        mock_store.mark_acknowledged.return_value = _sent()
        mock_gateway.process_message.return_value = _ack_response()

        result = await scheduler.poll()

        assert result.state == PollState.ACKNOWLEDGED_WAITING_FINAL
        assert result.auto_poll_scheduled is False
        assert not scheduler.has_pending_auto_poll

    @pytest.mark.asyncio
    async def test_solicited_acknowledgment_does_not_wait(self, scheduler, mock_gateway, mock_store):
        mock_store.mark_acknowledged.return_value = _sent(communication_type=CommunicationType.SOLICITED)
        mock_gateway.process_message.return_value = _ack_response()

        result = await scheduler.poll()

        assert result.outcome == PollOutcome.NOTHING_FINAL
        assert len(result.acknowledgments) == 1
        assert not scheduler.has_pending_auto_poll

    @pytest.mark.asyncio
    async def test_deferred_poll_outside_waiting_is_dropped(self, scheduler, mock_gateway):
        result = await scheduler.poll(deferred=True)

        assert result.outcome == PollOutcome.CANCELLED
        mock_gateway.process_message.assert_not_awaited()


@pytest.mark.unit
class TestRegistry:
    """One scheduler per subject"""

    @pytest.mark.asyncio
    async def test_get_reuses_scheduler(self, mock_store, mock_gateway, composer, nphies_settings, claim_ref):
        registry = PollSchedulerRegistry(mock_store, mock_gateway, composer=composer, settings=nphies_settings)
        other = SubjectRef(SubjectType.PRIOR_AUTHORIZATION, "CLM-1001")

        assert registry.get(claim_ref) is registry.get(claim_ref)
        assert registry.get(other) is not registry.get(claim_ref)
        assert registry.peek(SubjectRef(SubjectType.CLAIM, "unused")) is None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers(self, mock_store, mock_gateway, composer, nphies_settings, claim_ref):
        nphies_settings.AUTO_POLL_DELAY_SECONDS = 5
        mock_store.mark_acknowledged.return_value = _sent()
        mock_gateway.process_message.return_value = _ack_response()
        registry = PollSchedulerRegistry(mock_store, mock_gateway, composer=composer, settings=nphies_settings)

        scheduler = registry.get(claim_ref)
        await scheduler.poll()
        assert scheduler.has_pending_auto_poll

        await registry.shutdown()
        assert not scheduler.has_pending_auto_poll

    @pytest.mark.asyncio
    async def test_summary_counts_cycles(self, mock_store, mock_gateway, composer, nphies_settings, claim_ref):
        mock_gateway.process_message.side_effect = [
            TransportError("unreachable"),
            _final_response("approved"),
        ]
        registry = PollSchedulerRegistry(mock_store, mock_gateway, composer=composer, settings=nphies_settings)
        scheduler = registry.get(claim_ref)

        await scheduler.poll()
        await scheduler.poll()

        summary = registry.summary()
        assert summary["subjects"] == 1
        assert summary["polling"] == 0
        assert summary["failed_cycles"] == 1
        assert summary["final_responses"] == 1
