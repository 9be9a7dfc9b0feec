import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from aptitude.api_client import BackendClient
from aptitude.config import ALGORITHM, JWT_SECRET_KEY
from aptitude.draft_store import DraftStore
from aptitude.service import AptitudeTestService
from main import app, get_service

from tests.factories import (
    BASE_URL,
    CLASS_ID,
    OTHER_TEST_ID,
    SUBJECT_ID,
    STUDENT_ID,
    TEST_ID,
    FakeBackend,
    assessment_doc,
    mcq,
    short_answer,
    true_false,
)


def token(sub=STUDENT_ID, role="student"):
    return jwt.encode({"sub": sub, "role": role}, JWT_SECRET_KEY, algorithm=ALGORITHM)


AUTH = {"Authorization": f"Bearer {token()}"}


@pytest.fixture
def store(tmp_path):
    return DraftStore(str(tmp_path / "drafts.json"))


@pytest.fixture
def backend():
    return FakeBackend(
        assessment=assessment_doc([mcq("q1", points=2), short_answer("q2"), true_false("q3")]),
    )


@pytest.fixture
def client(backend, store):
    service = AptitudeTestService(store, client_factory=backend.client, tick_seconds=None)
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def open_and_begin(client):
    assert client.post(f"/sessions/{TEST_ID}", headers=AUTH).status_code == 200
    res = client.post(f"/sessions/{TEST_ID}/begin", headers=AUTH)
    assert res.status_code == 200
    return res.json()


# ============ auth ============

def test_requires_token(client):
    assert client.get(f"/sessions/{TEST_ID}").status_code == 401


def test_rejects_bad_token(client):
    res = client.get(f"/sessions/{TEST_ID}", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


def test_rejects_non_students(client):
    headers = {"Authorization": f"Bearer {token(role='teacher')}"}
    assert client.get("/aptitude/status", headers=headers).status_code == 403


# ============ assignment ============

def test_status_requires_assignment(client, backend):
    backend.enrollments = [{"subjectId": SUBJECT_ID, "isEnrolled": True, "aptitudeTestId": None}]

    res = client.get("/aptitude/status", headers=AUTH)

    assert res.status_code == 200
    body = res.json()
    assert body["decision"]["kind"] == "requires-assignment"
    assert body["attempts"] == 1


def test_status_ready_from_pending_tests(client, backend):
    backend.pending = {"hasPendingTest": True, "pendingTests": [{"type": "aptitude", "id": {"_id": TEST_ID}}]}

    body = client.get("/aptitude/status", headers=AUTH).json()

    assert body["decision"] == {"kind": "ready", "test_id": TEST_ID, "source": "pending-tests"}
    assert body["attempts"] == 0
    assert backend.calls("GET", "/enrollments")[0].url.params["studentId"] == STUDENT_ID


def test_status_redirect_loop_is_409(client, backend):
    backend.enrollments = [{"subjectId": SUBJECT_ID, "isEnrolled": True}]

    res = client.get("/aptitude/status", params={"attempts": 3}, headers=AUTH)

    assert res.status_code == 409
    assert res.json()["error"] == "RedirectLoopError"


def test_assign_returns_first_test(client, backend):
    backend.assigned = {SUBJECT_ID: TEST_ID}

    res = client.post("/aptitude/assign", headers=AUTH)

    assert res.status_code == 200
    assert res.json() == {"test_id": TEST_ID}


def test_assign_nothing_is_400(client):
    res = client.post("/aptitude/assign", headers=AUTH)

    assert res.status_code == 400


def test_subject_access(client, backend):
    backend.pending = {"hasPendingTest": True, "pendingTests": [{"type": "aptitude", "id": TEST_ID, "subjectId": SUBJECT_ID}]}

    blocked = client.get(f"/aptitude/access/{SUBJECT_ID}", headers=AUTH).json()
    other = client.get(f"/aptitude/access/{OTHER_TEST_ID}", headers=AUTH).json()

    assert blocked["has_access"] is False
    assert other["has_access"] is True


def test_subject_access_fails_open(store):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    service = AptitudeTestService(
        store,
        client_factory=lambda tok: BackendClient(token=tok, base_url=BASE_URL, transport=httpx.MockTransport(refuse)),
        tick_seconds=None,
    )
    app.dependency_overrides[get_service] = lambda: service
    try:
        res = TestClient(app).get(f"/aptitude/access/{SUBJECT_ID}", headers=AUTH)
    finally:
        app.dependency_overrides.clear()

    assert res.json()["has_access"] is True


# ============ sessions ============

def test_full_session_flow(client, backend, store):
    opened = client.post(f"/sessions/{TEST_ID}", headers=AUTH).json()
    assert opened["state"] == "intro"
    assert opened["title"] == "Math Aptitude"
    assert "question" not in opened

    begun = client.post(f"/sessions/{TEST_ID}/begin", headers=AUTH).json()
    assert begun["state"] == "in-progress"
    assert begun["question"]["id"] == "q1"
    assert begun["question"]["options"] == ["3", "4", "5"]
    assert begun["remaining_display"] == "10:00"

    client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "4"}, headers=AUTH)
    client.post(f"/sessions/{TEST_ID}/navigate", json={"action": "next"}, headers=AUTH)
    client.put(f"/sessions/{TEST_ID}/drafts/q2", json={"text": "paris"}, headers=AUTH)
    moved = client.post(f"/sessions/{TEST_ID}/navigate", json={"action": "go_to", "index": 2}, headers=AUTH).json()
    assert moved["answered_question_ids"] == ["q1", "q2"]
    client.put(f"/sessions/{TEST_ID}/answers/q3", json={"value": True}, headers=AUTH)

    res = client.post(f"/sessions/{TEST_ID}/submit", headers=AUTH)

    assert res.status_code == 200
    body = res.json()
    assert body["state"] == "results"
    assert body["result_id"] is not None
    assert body["enrollment_status_updated"] is True
    assert body["result"]["percentageScore"] == 100
    assert body["review"]["message"].startswith("Excellent")
    assert body["review"]["correct_answers"] == 3

    sent = backend.submitted[0]
    assert sent["assessmentId"] == TEST_ID
    assert sent["classId"] == CLASS_ID
    assert backend.calls("PUT", "/update-test-status/")[0].url.params["passed"] == "true"
    assert store.load_answers(STUDENT_ID, TEST_ID) == ({}, {})


def test_false_answer_is_kept(client):
    open_and_begin(client)

    res = client.put(f"/sessions/{TEST_ID}/answers/q3", json={"value": False}, headers=AUTH)

    assert res.json()["answered_question_ids"] == ["q3"]


def test_hidden_results(client, backend):
    backend.assessment["settings"]["showResults"] = False
    open_and_begin(client)

    body = client.post(f"/sessions/{TEST_ID}/submit", headers=AUTH).json()

    assert body["review"] is None


def test_failed_submission_keeps_session(client, backend, store):
    backend.submit_status = 503
    open_and_begin(client)
    client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "4"}, headers=AUTH)

    res = client.post(f"/sessions/{TEST_ID}/submit", headers=AUTH)

    assert res.status_code == 502
    assert res.json()["detail"] == "Result service unavailable"
    view = client.get(f"/sessions/{TEST_ID}", headers=AUTH).json()
    assert view["state"] == "in-progress"
    assert view["last_error"] == "Result service unavailable"
    assert store.load_answers(STUDENT_ID, TEST_ID)[0] == {"q1": "4"}


def test_unknown_session_is_404(client):
    assert client.get(f"/sessions/{TEST_ID}", headers=AUTH).status_code == 404


def test_malformed_assessment_id_is_400(client):
    res = client.post("/sessions/not-an-id", headers=AUTH)

    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"


def test_missing_assessment_is_502(client, backend):
    backend.assessment = None

    res = client.post(f"/sessions/{TEST_ID}", headers=AUTH)

    assert res.status_code == 502
    assert res.json()["detail"] == "Assessment not found"


def test_answer_before_begin_is_409(client):
    client.post(f"/sessions/{TEST_ID}", headers=AUTH)

    res = client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "4"}, headers=AUTH)

    assert res.status_code == 409


def test_invalid_option_is_400(client):
    open_and_begin(client)

    res = client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "42"}, headers=AUTH)

    assert res.status_code == 400


def test_go_to_requires_index(client):
    open_and_begin(client)

    res = client.post(f"/sessions/{TEST_ID}/navigate", json={"action": "go_to"}, headers=AUTH)

    assert res.status_code == 400


def test_toggle_flag(client):
    open_and_begin(client)

    first = client.post(f"/sessions/{TEST_ID}/flags/q2", headers=AUTH).json()
    second = client.post(f"/sessions/{TEST_ID}/flags/q2", headers=AUTH).json()

    assert first == {"question_id": "q2", "flagged": True}
    assert second["flagged"] is False


def test_reopen_returns_same_session(client):
    open_and_begin(client)
    client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "4"}, headers=AUTH)

    again = client.post(f"/sessions/{TEST_ID}", headers=AUTH).json()

    assert again["state"] == "in-progress"
    assert again["answered"] == 1


def test_abandon_keeps_draft_unless_discarded(client, store):
    open_and_begin(client)
    client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "4"}, headers=AUTH)

    kept = client.delete(f"/sessions/{TEST_ID}", headers=AUTH)
    assert kept.json()["draft_kept"] is True
    assert store.load_answers(STUDENT_ID, TEST_ID)[0] == {"q1": "4"}
    assert client.get(f"/sessions/{TEST_ID}", headers=AUTH).status_code == 404

    resumed = open_and_begin(client)
    assert resumed["answered"] == 1

    client.delete(f"/sessions/{TEST_ID}", params={"discard": True}, headers=AUTH)
    assert store.load_answers(STUDENT_ID, TEST_ID) == ({}, {})


def test_status_update_crash_still_reports_results(client, backend):
    backend.status_update_error = RuntimeError("proxy closed the stream")
    open_and_begin(client)

    res = client.post(f"/sessions/{TEST_ID}/submit", headers=AUTH)

    assert res.status_code == 200
    assert res.json()["state"] == "results"
    assert res.json()["enrollment_status_updated"] is False
    assert len(backend.submitted) == 1


def test_reopen_after_used_attempts_is_409(client):
    open_and_begin(client)
    client.post(f"/sessions/{TEST_ID}/submit", headers=AUTH)

    res = client.post(f"/sessions/{TEST_ID}", headers=AUTH)

    assert res.status_code == 409
    assert res.json()["error"] == "SessionStateError"
    assert client.get(f"/sessions/{TEST_ID}", headers=AUTH).json()["state"] == "results"


def test_two_students_same_test_do_not_share_drafts(client, store):
    other = {"Authorization": f"Bearer {token(sub='stu-2')}"}
    open_and_begin(client)
    client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "4"}, headers=AUTH)

    client.post(f"/sessions/{TEST_ID}", headers=other)
    begun = client.post(f"/sessions/{TEST_ID}/begin", headers=other).json()
    assert begun["answered"] == 0
    client.put(f"/sessions/{TEST_ID}/answers/q1", json={"value": "3"}, headers=other)
    assert client.post(f"/sessions/{TEST_ID}/submit", headers=other).status_code == 200

    assert store.load_answers(STUDENT_ID, TEST_ID)[0] == {"q1": "4"}
    assert client.get(f"/sessions/{TEST_ID}", headers=AUTH).json()["answered"] == 1
