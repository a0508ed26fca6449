"""API tests for the email sync routes."""

from uuid import uuid4

import pytest
from httpx import AsyncClient

from app.db.models import UserType
from app.services import email_sync_service


@pytest.fixture
def fake_inbox(gmail, monkeypatch):
    monkeypatch.setattr(email_sync_service, "gmail_client_factory", gmail.client)
    return gmail


async def test_routes_are_coach_only(client: AsyncClient, auth_headers, client_a, admin):
    for headers in (auth_headers(client_a.id, UserType.CLIENT), auth_headers(admin.id, UserType.ADMIN)):
        assert (await client.get("/email-sync/threads", headers=headers)).status_code == 403
        assert (await client.post("/email-sync/sync", headers=headers)).status_code == 403


async def test_sync_without_accounts_is_bad_request(client, auth_headers, coach):
    response = await client.post("/email-sync/sync", headers=auth_headers(coach.id, UserType.COACH))

    assert response.status_code == 400
    assert response.json() == {"detail": "No active email accounts found", "error_code": "BAD_REQUEST"}


async def test_sync_then_work_the_inbox(client, auth_headers, fake_inbox, coach, client_a, gmail_account):
    headers = auth_headers(coach.id, UserType.COACH)
    fake_inbox.add("m1", "Alex Morgan <alex.morgan@example.com>", subject="Meal plan question")

    synced = await client.post("/email-sync/sync", headers=headers)
    assert synced.status_code == 200
    assert synced.json()["client_emails_found"] == 1
    assert synced.json()["errors"] == []

    threads = (await client.get("/email-sync/threads", headers=headers)).json()
    assert len(threads) == 1
    thread = threads[0]
    assert thread["subject"] == "Meal plan question"
    assert thread["client"]["email"] == "alex.morgan@example.com"
    assert thread["is_read"] is False

    detail = (await client.get(f"/email-sync/threads/{thread['id']}", headers=headers)).json()
    assert [m["provider_message_id"] for m in detail["messages"]] == ["m1"]

    read = await client.post(f"/email-sync/threads/{thread['id']}/mark-read", json={}, headers=headers)
    assert read.json()["is_read"] is True

    patched = await client.patch(
        f"/email-sync/threads/{thread['id']}", json={"priority": "high", "status": "closed"}, headers=headers
    )
    assert patched.status_code == 200
    assert patched.json()["priority"] == "high"
    assert patched.json()["status"] == "closed"

    closed = await client.get("/email-sync/threads", params={"status": "closed"}, headers=headers)
    assert [t["id"] for t in closed.json()] == [thread["id"]]

    stats = (await client.get("/email-sync/stats", headers=headers)).json()
    assert stats["unread_threads"] == 0
    assert stats["total_threads_today"] == 1
    assert stats["last_sync_at"] is not None


async def test_thread_of_another_coach_is_not_found(
    client, auth_headers, fake_inbox, coach, other_coach, client_a, gmail_account
):
    fake_inbox.add("m1", client_a.email)
    await client.post("/email-sync/sync", headers=auth_headers(coach.id, UserType.COACH))
    thread_id = (await client.get("/email-sync/threads", headers=auth_headers(coach.id, UserType.COACH))).json()[0]["id"]

    other_headers = auth_headers(other_coach.id, UserType.COACH)
    assert (await client.get(f"/email-sync/threads/{thread_id}", headers=other_headers)).status_code == 404
    assert (await client.get(f"/email-sync/threads/{uuid4()}", headers=other_headers)).status_code == 404


async def test_invalid_thread_update_values(client, auth_headers, coach):
    headers = auth_headers(coach.id, UserType.COACH)

    response = await client.patch(f"/email-sync/threads/{uuid4()}", json={"priority": "urgent"}, headers=headers)
    assert response.status_code == 422

    response = await client.get("/email-sync/threads", params={"limit": 500}, headers=headers)
    assert response.status_code == 422
