from __future__ import annotations

from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

from backend.app.models import EmailCategory
from backend.app.services.unsubscribe import build_unsubscribe_url


def create_user(client, email: str, role: str = "job-seeker") -> str:
    response = client.post("/users", json={"email": email, "role": role})
    assert response.status_code == 200
    return response.json()["user_id"]


def create_application(client, candidate_id: str, recruiter_id: str | None = None) -> str:
    response = client.post(
        "/applications",
        json={
            "job_id": "job_1",
            "job_title": "Backend Engineer",
            "company": "Acme",
            "candidate_id": candidate_id,
            "recruiter_id": recruiter_id,
        },
    )
    assert response.status_code == 200
    return response.json()["application_id"]


def set_status(client, application_id: str, value: str):
    return client.patch(f"/applications/{application_id}/status", json={"status": value})


def test_duplicate_user_email_is_conflict(client) -> None:
    create_user(client, "dup@example.com")
    response = client.post("/users", json={"email": "DUP@example.com"})
    assert response.status_code == 409


def test_new_user_gets_default_preferences_and_welcome_email(client) -> None:
    user_id = create_user(client, "new@example.com")
    response = client.get(f"/email-preferences?user_id={user_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["is_default"] is False
    assert body["preferences"]["job_alerts"] == "weekly"
    assert body["preferences"]["application_updates"] is True
    assert body["preferences"]["marketing"] is False

    outbox = client.app.state.transport.outbox
    assert outbox[-1].to == ["new@example.com"]
    assert "/email/unsubscribe?token=" in outbox[-1].text


def test_preferences_default_when_no_record(client) -> None:
    response = client.get("/email-preferences")
    assert response.status_code == 200
    assert response.json()["is_default"] is True


def test_preferences_patch_validation(client) -> None:
    user_id = create_user(client, "prefs@example.com")
    assert client.patch(f"/email-preferences?user_id={user_id}", json={}).status_code == 400
    bad_frequency = client.patch(
        f"/email-preferences?user_id={user_id}", json={"job_alerts": "hourly"}
    )
    assert bad_frequency.status_code == 422
    unknown_field = client.patch(f"/email-preferences?user_id={user_id}", json={"sms": True})
    assert unknown_field.status_code == 422

    updated = client.patch(
        f"/email-preferences?user_id={user_id}",
        json={"job_alerts": "daily", "marketing": True},
    )
    assert updated.status_code == 200
    prefs = updated.json()["preferences"]
    assert prefs["job_alerts"] == "daily"
    assert prefs["marketing"] is True
    assert prefs["application_updates"] is True


def test_status_update_flow_and_notifications(client) -> None:
    candidate_id = create_user(client, "cand@example.com")
    application_id = create_application(client, candidate_id)
    outbox = client.app.state.transport.outbox
    sent_before = len(outbox)

    viewed = set_status(client, application_id, "viewed")
    assert viewed.status_code == 200
    assert viewed.json()["notification"] is None

    contacted = set_status(client, application_id, "contacted")
    assert contacted.status_code == 200
    body = contacted.json()
    assert body["from_status"] == "viewed"
    assert body["status_changed"] is True
    assert body["notification"]["send"] is True
    assert len(outbox) == sent_before + 1
    assert outbox[-1].subject == "Application Update: Contacted - Backend Engineer"

    # immediate lower priority change is suppressed
    rejected = set_status(client, application_id, "rejected")
    assert rejected.status_code == 200
    assert rejected.json()["notification"]["send"] is False
    assert len(outbox) == sent_before + 1

    application = client.get(f"/applications/{application_id}").json()
    assert application["status"] == "rejected"
    assert application["last_status_notified"] == "contacted"
    assert application["allowed_transitions"] == []


def test_self_transition_is_a_no_op(client) -> None:
    candidate_id = create_user(client, "same@example.com")
    application_id = create_application(client, candidate_id)
    response = set_status(client, application_id, "applied")
    assert response.status_code == 200
    assert response.json()["status_changed"] is False


def test_illegal_transition_returns_allowed_list(client) -> None:
    candidate_id = create_user(client, "skip@example.com")
    application_id = create_application(client, candidate_id)
    response = set_status(client, application_id, "offered")
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["from"] == "applied"
    assert detail["to"] == "offered"
    assert detail["allowed"] == ["viewed", "rejected", "withdrawn"]
    assert detail["message"].startswith('Invalid status transition from "applied"')


def test_unknown_status_and_withdrawn_are_rejected(client) -> None:
    candidate_id = create_user(client, "odd@example.com")
    application_id = create_application(client, candidate_id)
    unknown = set_status(client, application_id, "ghosted")
    assert unknown.status_code == 400
    assert 'Invalid status "ghosted"' in unknown.json()["detail"]
    assert set_status(client, application_id, "withdrawn").status_code == 400


def test_withdraw_then_terminal(client) -> None:
    candidate_id = create_user(client, "leave@example.com")
    application_id = create_application(client, candidate_id)
    withdrawn = client.post(f"/applications/{application_id}/withdraw")
    assert withdrawn.status_code == 200
    assert withdrawn.json()["status"] == "withdrawn"

    transitions = client.get(f"/applications/{application_id}/transitions").json()
    assert transitions["terminal"] is True
    assert transitions["allowed_transitions"] == []

    response = set_status(client, application_id, "viewed")
    assert response.status_code == 400
    assert response.json()["detail"]["message"].startswith('Cannot change status from "withdrawn"')


def test_duplicate_application_is_conflict(client) -> None:
    candidate_id = create_user(client, "twice@example.com")
    create_application(client, candidate_id)
    response = client.post(
        "/applications",
        json={
            "job_id": "job_1",
            "job_title": "Backend Engineer",
            "company": "Acme",
            "candidate_id": candidate_id,
        },
    )
    assert response.status_code == 409


def test_recruiter_is_emailed_about_new_application(client) -> None:
    recruiter_id = create_user(client, "recruiter@example.com", role="recruiter")
    candidate_id = create_user(client, "hopeful@example.com")
    create_application(client, candidate_id, recruiter_id)
    message = client.app.state.transport.outbox[-1]
    assert message.to == ["recruiter@example.com"]
    assert message.subject == "New Application: Backend Engineer"
    assert "/recruiter/account/edit" in message.text


def test_unsubscribe_endpoint(client) -> None:
    user_id = create_user(client, "bye@example.com")
    url = build_unsubscribe_url(
        user_id,
        EmailCategory.user_notification,
        secret=client.app.state.settings.unsubscribe_secret,
        base_url="http://localhost:3000",
    )
    token = parse_qs(urlparse(url).query)["token"][0]

    first = client.get("/email/unsubscribe", params={"token": token})
    assert first.status_code == 200
    assert first.json()["updated"] is True
    assert first.json()["preference_field"] == "job_alerts"

    second = client.get("/email/unsubscribe", params={"token": token})
    assert second.json()["already_unsubscribed"] is True

    prefs = client.get(f"/email-preferences?user_id={user_id}").json()["preferences"]
    assert prefs["job_alerts"] == "never"

    assert client.get("/email/unsubscribe", params={"token": "garbage"}).status_code == 400


def test_unsubscribe_from_critical_category_is_refused(client) -> None:
    user_id = create_user(client, "crit@example.com")
    url = build_unsubscribe_url(
        user_id,
        EmailCategory.critical_transactional,
        secret=client.app.state.settings.unsubscribe_secret,
        base_url="http://localhost:3000",
    )
    token = parse_qs(urlparse(url).query)["token"][0]
    assert client.get("/email/unsubscribe", params={"token": token}).status_code == 400


def test_evaluate_and_send_endpoints(client) -> None:
    user_id = create_user(client, "gate@example.com")
    client.patch(f"/email-preferences?user_id={user_id}", json={"marketing": False})

    blocked = client.post(
        "/notifications/evaluate",
        json={"user_id": user_id, "category": "user_notification", "event_type": "marketing_promo"},
    )
    assert blocked.status_code == 200
    assert blocked.json() == {
        "send": False,
        "reason": "User has disabled marketing emails",
        "warnings": [],
        "winning_status": None,
    }

    suppressed = client.post(
        "/notifications/send",
        json={
            "to": ["gate@example.com"],
            "subject": "Spring promo",
            "text": "Deals",
            "category": "user_notification",
            "event_type": "marketing_promo",
            "user_id": user_id,
        },
    )
    assert suppressed.status_code == 200
    assert suppressed.json()["success"] is True
    assert suppressed.json()["suppressed"] is True

    sent = client.post(
        "/notifications/send",
        json={
            "to": ["gate@example.com"],
            "subject": "Verify your email",
            "text": "Click to verify",
            "category": "critical_transactional",
            "event_type": "email_verification",
            "user_id": user_id,
        },
    )
    assert sent.status_code == 200
    assert sent.json()["success"] is True
    assert sent.json()["message_id"].startswith("mem_")

    empty = client.post(
        "/notifications/send",
        json={
            "to": ["gate@example.com"],
            "subject": "Nothing",
            "category": "system",
            "event_type": "noop",
        },
    )
    assert empty.status_code == 200
    assert empty.json()["success"] is False


def test_evaluate_with_status_context(client) -> None:
    response = client.post(
        "/notifications/evaluate",
        json={
            "category": "important_transactional",
            "event_type": "status_changed",
            "status_context": {
                "candidate_status": "rejected",
                "last_status_email_sent_at_utc": "2099-01-01T00:00:00",
                "last_status_notified": "offered",
            },
        },
    )
    assert response.status_code == 200
    # a marker in the future is still inside the window
    assert response.json()["send"] is False


def test_rate_limit_counts_and_reset(client) -> None:
    user_id = create_user(client, "count@example.com")
    counts = client.get(f"/notifications/rate-limits/{user_id}").json()
    assert counts["hourly"] == 1
    assert counts["daily"] == 1

    assert client.post("/notifications/rate-limits/reset").status_code == 200
    counts = client.get(f"/notifications/rate-limits/{user_id}").json()
    assert counts["hourly"] == 0

    deliveries = client.get(f"/notifications/deliveries?user_id={user_id}").json()
    assert [item["event_type"] for item in deliveries] == ["user_welcome"]


def test_evaluate_accepts_utc_suffixed_timestamp(client) -> None:
    sent_at = (datetime.utcnow() - timedelta(minutes=5)).strftime("%Y-%m-%dT%H:%M:%SZ")
    response = client.post(
        "/notifications/evaluate",
        json={
            "category": "important_transactional",
            "event_type": "status_changed",
            "status_context": {
                "candidate_status": "rejected",
                "last_status_email_sent_at_utc": sent_at,
                "last_status_notified": "offered",
            },
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["send"] is False
    assert "rejected has lower or equal priority than offered" in body["reason"]


def test_deliveries_endpoint_honours_limit(client) -> None:
    for index in range(3):
        create_user(client, f"limit{index}@example.com")
    deliveries = client.get("/notifications/deliveries?limit=2").json()
    assert [item["recipients"] for item in deliveries] == [
        ["limit1@example.com"],
        ["limit2@example.com"],
    ]
    assert client.get("/notifications/deliveries?limit=0").status_code == 422
