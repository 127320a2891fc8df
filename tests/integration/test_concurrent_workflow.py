"""
Integration Tests for concurrent polls and solicited sends
Runs the scheduler and service over the SQLAlchemy store on in-memory SQLite
"""

import asyncio

import pytest
import pytest_asyncio

from src.core.enums import CommunicationType, PollOutcome, PollState, SubjectType
from src.services.nphies.communication_service import CommunicationSendResult, CommunicationService
from src.services.nphies.errors import (
    ExchangeError,
    PollInProgressError,
    RequestAlreadyRespondedError,
)
from src.services.nphies.poll_scheduler import PollScheduler, PollSchedulerRegistry
from src.services.nphies.records import (
    CommunicationDraft,
    CommunicationRequestRecord,
    PayloadDraft,
)
from tests.fixtures.nphies_bundles import response_bundle


class SlowGateway:
    """Gateway double that holds every exchange open and counts overlap."""

    def __init__(self, response, delay=0.05):
        self.response = response
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.peak_in_flight = 0

    async def process_message(self, bundle, endpoint=None):
        self.calls += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return self.response
        finally:
            self.in_flight -= 1


@pytest_asyncio.fixture
async def registered_store(sql_store, claim_record):
    await sql_store.upsert_subject(claim_record)
    return sql_store


def _solicited_draft(text):
    return CommunicationDraft(
        payloads=[PayloadDraft(content_string=text)],
        communication_type=CommunicationType.SOLICITED,
        based_on_request_id="REQ-123",
    )


@pytest.mark.integration
class TestConcurrentPolls:
    """One poll in flight per subject"""

    @pytest.mark.asyncio
    async def test_concurrent_polls_send_one_request(self, registered_store, claim_ref, composer, nphies_settings):
        gateway = SlowGateway(response_bundle(code="queued"))
        scheduler = PollScheduler(
            claim_ref, store=registered_store, gateway=gateway, composer=composer, settings=nphies_settings
        )

        results = await asyncio.gather(scheduler.poll(), scheduler.poll(), return_exceptions=True)

        outcomes = [r.outcome for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, PollInProgressError)]
        assert outcomes == [PollOutcome.QUEUED]
        assert len(rejected) == 1
        assert gateway.calls == 1
        assert gateway.peak_in_flight == 1
        assert scheduler.state == PollState.IDLE

    @pytest.mark.asyncio
    async def test_manual_poll_rejected_while_deferred_poll_runs(
        self, registered_store, claim_ref, composer, nphies_settings
    ):
        gateway = SlowGateway(response_bundle(code="queued"))
        registry = PollSchedulerRegistry(
            registered_store, gateway, composer=composer, settings=nphies_settings
        )
        scheduler = registry.get(claim_ref)
        scheduler._state = PollState.ACKNOWLEDGED_WAITING_FINAL

        deferred = asyncio.create_task(scheduler.poll(deferred=True))
        await asyncio.sleep(0)

        with pytest.raises(PollInProgressError):
            await scheduler.poll()

        assert (await deferred).outcome == PollOutcome.QUEUED
        assert gateway.calls == 1
        assert registry.summary()["polling"] == 0


@pytest_asyncio.fixture
async def open_request(registered_store):
    return await registered_store.upsert_communication_request(
        CommunicationRequestRecord(
            request_id="REQ-123",
            subject_type=SubjectType.CLAIM,
            subject_id="CLM-1001",
            status="active",
        )
    )


@pytest.fixture
def slow_gateway():
    return SlowGateway(response_bundle(code="ok"))


@pytest.fixture
def service(registered_store, open_request, slow_gateway, composer, nphies_settings):
    registry = PollSchedulerRegistry(
        registered_store, slow_gateway, composer=composer, settings=nphies_settings
    )
    return CommunicationService(
        registered_store, slow_gateway, registry, composer=composer, settings=nphies_settings
    )


@pytest.mark.integration
class TestConcurrentSolicitedSends:
    """A CommunicationRequest is answered at most once"""

    @pytest.mark.asyncio
    async def test_only_one_answer_reaches_the_exchange(self, service, slow_gateway, registered_store, claim_ref):
        results = await asyncio.gather(
            service.send_communication(claim_ref, _solicited_draft("first")),
            service.send_communication(claim_ref, _solicited_draft("second")),
            return_exceptions=True,
        )

        sent = [r for r in results if isinstance(r, CommunicationSendResult)]
        rejected = [r for r in results if isinstance(r, RequestAlreadyRespondedError)]
        assert len(sent) == 1
        assert len(rejected) == 1
        assert slow_gateway.calls == 1

        recorded = await registered_store.list_communications(claim_ref)
        assert [c.communication_id for c in recorded] == [sent[0].communication.communication_id]

        request = await registered_store.get_communication_request("REQ-123")
        assert request.is_responded
        assert request.response_communication_id == sent[0].communication.communication_id
        assert request.reserved_communication_id is None

    @pytest.mark.asyncio
    async def test_rejected_send_frees_the_request(self, service, slow_gateway, registered_store, claim_ref):
        slow_gateway.response = response_bundle(code="transient-error")
        with pytest.raises(ExchangeError):
            await service.send_communication(claim_ref, _solicited_draft("first"))

        pending = await registered_store.get_communication_request("REQ-123")
        assert pending.reserved_communication_id is None
        assert not pending.is_responded

        slow_gateway.response = response_bundle(code="ok")
        result = await service.send_communication(claim_ref, _solicited_draft("retry"))

        answered = await registered_store.get_communication_request("REQ-123")
        assert answered.response_communication_id == result.communication.communication_id
