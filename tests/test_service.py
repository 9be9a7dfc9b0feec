import asyncio

import pytest

from aptitude.draft_store import DraftStore
from aptitude.errors import SessionStateError
from aptitude.service import AptitudeTestService, SessionNotFound
from aptitude.session import SessionState

from tests.factories import OTHER_TEST_ID, STUDENT_ID, TEST_ID, FakeBackend, assessment_doc, mcq

KEY = (STUDENT_ID, TEST_ID)


@pytest.fixture
def store(tmp_path):
    return DraftStore(str(tmp_path / "drafts.json"))


def make_service(store, backend, **kwargs):
    kwargs.setdefault("tick_seconds", None)
    return AptitudeTestService(store, client_factory=backend.client, **kwargs)


def take_test(service, assessment_id=TEST_ID):
    async def run():
        await service.open_session(STUDENT_ID, "tok", assessment_id)
        service.begin(STUDENT_ID, assessment_id)
        service.get_session(STUDENT_ID, assessment_id).answer("q1", "4")
        return await service.submit(STUDENT_ID, assessment_id)
    return asyncio.run(run())


def test_submitted_session_moves_to_finished(store):
    service = make_service(store, FakeBackend(assessment=assessment_doc([mcq("q1")])))

    session = take_test(service)

    assert session.state is SessionState.RESULTS
    assert KEY not in service.sessions
    assert service.get_session(STUDENT_ID, TEST_ID) is session


def test_finished_sessions_are_bounded(store):
    backend = FakeBackend(assessment=assessment_doc([mcq("q1")]))
    service = make_service(store, backend, finished_cache=1)

    take_test(service, TEST_ID)
    take_test(service, OTHER_TEST_ID)

    assert list(service.finished) == [(STUDENT_ID, OTHER_TEST_ID)]
    with pytest.raises(SessionNotFound):
        service.get_session(STUDENT_ID, TEST_ID)


def test_timer_entry_is_dropped_when_the_test_ends(store):
    backend = FakeBackend(assessment=assessment_doc([mcq("q1")], time_limit=1))
    service = make_service(store, backend, tick_seconds=0.001)

    async def run():
        await service.open_session(STUDENT_ID, "tok", TEST_ID)
        service.begin(STUDENT_ID, TEST_ID)
        timer = service._timers[KEY]
        await timer
        await asyncio.sleep(0)

    asyncio.run(run())

    assert service._timers == {}
    assert service.sessions == {}
    assert service.get_session(STUDENT_ID, TEST_ID).state is SessionState.RESULTS
    assert len(backend.submitted) == 1


def test_reopen_after_last_attempt_is_rejected(store):
    service = make_service(store, FakeBackend(assessment=assessment_doc([mcq("q1")])))
    take_test(service)

    with pytest.raises(SessionStateError):
        asyncio.run(service.open_session(STUDENT_ID, "tok", TEST_ID))


def test_second_attempt_is_numbered(store):
    doc = assessment_doc([mcq("q1")])
    doc["settings"]["attemptsAllowed"] = 2
    backend = FakeBackend(assessment=doc)
    service = make_service(store, backend)

    take_test(service)
    take_test(service)

    assert [sent["attemptNumber"] for sent in backend.submitted] == [1, 2]
    with pytest.raises(SessionStateError):
        asyncio.run(service.open_session(STUDENT_ID, "tok", TEST_ID))


def test_abandon_forgets_finished_session(store):
    service = make_service(store, FakeBackend(assessment=assessment_doc([mcq("q1")])))
    take_test(service)

    asyncio.run(service.abandon(STUDENT_ID, TEST_ID))

    assert service.finished == {}
    with pytest.raises(SessionNotFound):
        service.get_session(STUDENT_ID, TEST_ID)
