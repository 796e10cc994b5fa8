import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from services import admission
from services.session_token import issue_session_token


@pytest_asyncio.fixture
async def integration_client(session_maker, monkeypatch):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    async def fake_generate(intake, letter_type):
        return f"{letter_type}\n\nDear {intake['recipient_name']},\n\nPlease remit payment."

    monkeypatch.setattr(admission, "async_session_maker", session_maker)
    monkeypatch.setattr(admission, "generate_draft", fake_generate)
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


def _auth(user_id: str, role: str = "subscriber", **kwargs) -> dict:
    token = issue_session_token(user_id, role, email=f"{user_id}@example.com", **kwargs)
    return {"Authorization": f"Bearer {token}"}


async def _create_letter(client, headers, intake, title="Unpaid invoice"):
    resp = await client.post(
        "/letters",
        json={"title": title, "letter_type": "Demand Letter", "intake": intake},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_requests_without_session_are_rejected(integration_client):
    resp = await integration_client.get("/letters/anything")
    assert resp.status_code == 401

    resp = await integration_client.get("/letters/anything", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_submit_review_and_complete_over_http(integration_client, make_user, sample_intake):
    client = integration_client
    subscriber = _auth(await make_user())
    reviewer = _auth(await make_user("employee"), "employee")

    created = await _create_letter(client, subscriber, sample_intake)
    assert created["status"] == "draft"
    assert created["is_first_document"] is True

    submitted = await client.post(f"/letters/{created['id']}/submit", headers=subscriber)
    assert submitted.status_code == 200, submitted.text
    assert submitted.json()["generation"] == "background"

    detail = await client.get(f"/letters/{created['id']}", headers=subscriber)
    assert detail.json()["status"] == "pending_review"
    assert detail.json()["ai_draft_content"] is None

    position = await client.get(f"/letters/{created['id']}/queue-position", headers=subscriber)
    assert position.json() == {"letter_id": created["id"], "queue_position": 1, "in_queue": True}

    queue = await client.get("/review/queue", headers=reviewer)
    assert queue.json()["count"] == 1

    claimed = await client.post("/review/next", headers=reviewer)
    body = claimed.json()
    assert body["claimed"] is True
    assert body["letter"]["letter_id"] == created["id"]
    assert body["letter"]["is_first_letter"] is True

    approved = await client.post(
        f"/review/letters/{created['id']}/approve",
        json={"notes": "Approved as drafted"},
        headers=reviewer,
    )
    assert approved.status_code == 200, approved.text
    assert approved.json()["status"] == "approved"

    completed = await client.post(f"/review/letters/{created['id']}/complete", headers=reviewer)
    assert completed.json()["status"] == "completed"

    detail = await client.get(f"/letters/{created['id']}", headers=subscriber)
    assert "Please remit payment." in detail.json()["final_content"]

    audit = await client.get(f"/letters/{created['id']}/audit", headers=subscriber)
    assert [entry["new_status"] for entry in audit.json()] == [
        "draft",
        "generating",
        "pending_review",
        "under_review",
        "approved",
        "completed",
    ]

    empty = await client.post("/review/next", headers=reviewer)
    assert empty.json() == {"claimed": False, "letter": None}


@pytest.mark.asyncio
async def test_submit_without_allowance_returns_402(integration_client, make_user, make_account, sample_intake):
    client = integration_client
    subscriber_id = await make_user()
    await make_account(subscriber_id, credits=0, free_trial_used=True)
    headers = _auth(subscriber_id)

    created = await _create_letter(client, headers, sample_intake)
    resp = await client.post(f"/letters/{created['id']}/submit", headers=headers)

    assert resp.status_code == 402
    assert resp.json()["code"] == "insufficient_allowance"


@pytest.mark.asyncio
async def test_invalid_intake_and_letter_type_are_422(integration_client, make_user, sample_intake):
    client = integration_client
    headers = _auth(await make_user())

    bad_type = await client.post(
        "/letters",
        json={"title": "Bad", "letter_type": "Love Letter", "intake": sample_intake},
        headers=headers,
    )
    assert bad_type.status_code == 422

    injected = await client.post(
        "/letters",
        json={
            "title": "Bad",
            "letter_type": "Demand Letter",
            "intake": {**sample_intake, "issue_description": "<script>alert('x')</script> pay the invoice"},
        },
        headers=headers,
    )
    assert injected.status_code == 422


@pytest.mark.asyncio
async def test_other_subscribers_cannot_read_letters(integration_client, make_user, sample_intake):
    client = integration_client
    owner = _auth(await make_user())
    stranger = _auth(await make_user())

    created = await _create_letter(client, owner, sample_intake)
    resp = await client.get(f"/letters/{created['id']}", headers=stranger)

    assert resp.status_code == 404
    assert resp.json()["code"] == "letter_not_found"


@pytest.mark.asyncio
async def test_subscribers_cannot_use_review_endpoints(integration_client, make_user):
    headers = _auth(await make_user())
    resp = await integration_client.post("/review/next", headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_activate_subscription_requires_admin(integration_client, make_user):
    client = integration_client
    subscriber_id = await make_user()
    admin = _auth(await make_user("admin"), "admin")

    forbidden = await client.post(
        "/billing/subscriptions/activate",
        json={"subscriber_id": subscriber_id, "plan_tier": "pro"},
        headers=_auth(subscriber_id),
    )
    assert forbidden.status_code == 403

    unknown = await client.post(
        "/billing/subscriptions/activate",
        json={"subscriber_id": subscriber_id, "plan_tier": "platinum"},
        headers=admin,
    )
    assert unknown.status_code == 422

    activated = await client.post(
        "/billing/subscriptions/activate",
        json={"subscriber_id": subscriber_id, "plan_tier": "pro"},
        headers=admin,
    )
    assert activated.status_code == 200, activated.text
    assert activated.json()["credits_remaining"] == 8
    assert activated.json()["plan_name"] == "Pro Plan"

    summary = await client.get("/billing/allowance", headers=_auth(subscriber_id))
    assert summary.json()["remaining"] == 8
    assert summary.json()["recent_entries"][0]["entry_type"] == "activation"


@pytest.mark.asyncio
async def test_staff_cannot_create_letters(integration_client, make_user, sample_intake):
    reviewer = _auth(await make_user("employee"), "employee")
    admin = _auth(await make_user("admin"), "admin")

    for headers in (reviewer, admin):
        resp = await integration_client.post(
            "/letters",
            json={"title": "Unpaid invoice", "letter_type": "Demand Letter", "intake": sample_intake},
            headers=headers,
        )
        assert resp.status_code == 403


@pytest.mark.asyncio
async def test_session_issued_under_an_old_role_is_rejected(integration_client, make_user):
    employee_id = await make_user("employee")

    resp = await integration_client.get("/review/queue", headers=_auth(employee_id, "admin"))

    assert resp.status_code == 401
    assert "out of date" in resp.json()["detail"]
