from __future__ import annotations

import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from gatherly import crud, registrations
from gatherly.models import EventRegistration
from gatherly.utils import utcnow

from conftest import attachment_text, auth

QUESTIONS = {
    "phone": {"enabled": True, "required": True},
    "custom": [{"id": "company", "label": "Company", "required": True, "order": 0}],
}


@pytest.fixture()
def organizer(factory):
    return factory.user("organizer@example.com", "Olivia Organizer")


@pytest.fixture()
def community(factory, organizer):
    return factory.community("Baku Devs", organizer)


@pytest.fixture()
def event(factory, community, organizer):
    return factory.event(community, organizer)


def _actions(event) -> str:
    return f"/c/baku-devs/events/{event.id}/actions"


def _anonymous_register(client, event, **extra):
    data = {"intent": "anonymous-register", "name": "Jane Doe", "email": "jane@example.com"}
    data.update(extra)
    return client.post(_actions(event), data=data, follow_redirects=False)


def _registrations(session) -> list[EventRegistration]:
    session.expire_all()
    return list(session.scalars(select(EventRegistration)).all())


def test_anonymous_register_creates_unverified_row_and_sends_link(client, session, outbox, event):
    response = _anonymous_register(client, event, email="  Jane@Example.com ")

    assert response.status_code == 303
    assert response.headers["location"] == (
        f"/c/baku-devs/events/{event.id}/verification-sent?email=jane%40example.com"
    )
    [registration] = _registrations(session)
    assert registration.user_id is None
    assert registration.anonymous_name == "Jane Doe"
    assert registration.anonymous_email == "jane@example.com"
    assert registration.is_verified is False
    assert registration.approval_status == "approved"
    assert len(registration.verification_token) == 64
    assert registration.token_expires_at > utcnow() + timedelta(hours=23)

    [message] = outbox.to("jane@example.com")
    assert message["subject"] == "Verify your registration for Python Meetup"
    assert (
        f"https://gatherly.test/c/baku-devs/events/{event.id}/verify?token="
        f"{registration.verification_token}"
    ) in message["html"]


def test_second_anonymous_attempt_reports_pending_verification(client, session, outbox, event):
    assert _anonymous_register(client, event).status_code == 303
    response = _anonymous_register(client, event, name="Jane Again")

    assert response.status_code == 409
    assert response.json() == {
        "success": False,
        "error": "A verification email has already been sent to this address",
    }
    assert len(_registrations(session)) == 1
    assert len(outbox.to("jane@example.com")) == 1


def test_sidebar_source_returns_json_instead_of_redirect(client, event):
    response = _anonymous_register(client, event, _source="sidebar")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "verificationSent": True,
        "email": "jane@example.com",
    }


def test_anonymous_register_requires_name_and_email(client, session, event):
    response = _anonymous_register(client, event, name="  ")

    assert response.status_code == 400
    assert response.json()["error"] == registrations.NAME_AND_EMAIL_REQUIRED
    assert _registrations(session) == []


def test_email_failure_does_not_undo_registration(client, session, outbox, event):
    outbox.fail_for.add("jane@example.com")

    response = _anonymous_register(client, event)

    assert response.status_code == 303
    assert len(_registrations(session)) == 1


def test_verify_confirms_registration_and_notifies_organizers(client, session, outbox, event):
    _anonymous_register(client, event)
    token = _registrations(session)[0].verification_token

    response = client.get(
        f"/c/baku-devs/events/{event.id}/verify",
        params={"token": token},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert response.headers["location"] == f"/c/baku-devs/events/{event.id}?verified=success"
    [registration] = _registrations(session)
    assert registration.is_verified is True
    assert registration.verification_token is None

    subjects = outbox.subjects("jane@example.com")
    assert subjects == [
        "Verify your registration for Python Meetup",
        "You're registered for Python Meetup!",
    ]
    confirmation = outbox.to("jane@example.com")[-1]
    assert f"UID:{event.id}@gatherly" in attachment_text(confirmation)

    [notice] = outbox.to("organizer@example.com")
    assert notice["subject"] == "New registration for Python Meetup"
    assert "Jane Doe" in notice["html"]

    again = _anonymous_register(client, event)
    assert again.status_code == 409
    assert again.json()["error"] == "This email is already registered for this event"


def test_verify_with_approval_required_leaves_registration_pending(
    client, session, outbox, factory, community, organizer
):
    event = factory.event(community, organizer, is_approve_required=True)
    _anonymous_register(client, event)
    token = _registrations(session)[0].verification_token

    response = client.get(
        f"/c/baku-devs/events/{event.id}/verify",
        params={"token": token},
        follow_redirects=False,
    )

    assert response.headers["location"] == (
        f"/c/baku-devs/events/{event.id}?verified=pending_approval"
    )
    [registration] = _registrations(session)
    assert registration.is_verified is True
    assert registration.approval_status == "pending"
    assert outbox.subjects("jane@example.com") == [
        "Verify your registration for Python Meetup"
    ]
    assert len(outbox.to("organizer@example.com")) == 1


def test_verified_landing_page_lists_the_attendee(client, session, event):
    _anonymous_register(client, event)
    token = _registrations(session)[0].verification_token

    response = client.get(
        f"/c/baku-devs/events/{event.id}/verify", params={"token": token}
    )

    assert response.status_code == 200
    assert str(response.url).endswith(f"/c/baku-devs/events/{event.id}?verified=success")
    assert "Your email is verified. You're registered" in response.text
    assert "<li>Jane Doe</li>" in response.text
    assert "1 attending" in response.text


def test_pending_landing_page_hides_unapproved_attendee(
    client, session, factory, community, organizer
):
    event = factory.event(community, organizer, is_approve_required=True)
    _anonymous_register(client, event)
    token = _registrations(session)[0].verification_token

    response = client.get(
        f"/c/baku-devs/events/{event.id}/verify", params={"token": token}
    )

    assert response.status_code == 200
    assert "The organizers will review your registration" in response.text
    assert "Jane Doe" not in response.text
    assert "0 attending" in response.text


def test_event_page_requires_matching_community(client, event):
    assert client.get(f"/c/baku-devs/events/{event.id}").status_code == 200
    assert client.get(f"/c/other/events/{event.id}").status_code == 404


def test_verify_rejects_bad_tokens(client, session, factory, community, organizer, event):
    other = factory.event(community, organizer, title="Other Meetup")
    crud.create_registration(
        session,
        event=event,
        name="Late",
        email="late@example.com",
        is_verified=False,
        approval_status="approved",
        verification_token="a" * 64,
        token_expires_at=utcnow() - timedelta(minutes=1),
    )
    crud.create_registration(
        session,
        event=other,
        name="Elsewhere",
        email="elsewhere@example.com",
        is_verified=False,
        approval_status="approved",
        verification_token="b" * 64,
        token_expires_at=utcnow() + timedelta(hours=1),
    )
    session.commit()
    verify = f"/c/baku-devs/events/{event.id}/verify"

    missing = client.get(verify)
    assert missing.status_code == 400
    assert "Verification token is required" in missing.text

    unknown = client.get(verify, params={"token": "c" * 64})
    assert unknown.status_code == 400
    assert "Invalid or expired verification link" in unknown.text

    expired = client.get(verify, params={"token": "a" * 64})
    assert expired.status_code == 400
    assert "Verification link has expired" in expired.text

    wrong_event = client.get(verify, params={"token": "b" * 64})
    assert wrong_event.status_code == 400
    assert "Invalid verification link for this event" in wrong_event.text


def test_verification_sent_page_shows_address(client, event):
    response = client.get(
        f"/c/baku-devs/events/{event.id}/verification-sent",
        params={"email": "jane@example.com"},
    )

    assert response.status_code == 200
    assert "jane@example.com" in response.text
    assert "Python Meetup" in response.text


def test_custom_questions_are_requested_before_registering(
    client, session, factory, community, organizer
):
    event = factory.event(community, organizer, custom_questions=QUESTIONS)

    response = _anonymous_register(client, event)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "needsCustomQuestions": True,
        "anonymousName": "Jane Doe",
        "anonymousEmail": "jane@example.com",
    }
    assert _registrations(session) == []


def test_custom_question_answers_are_validated_and_stored(
    client, session, outbox, factory, community, organizer
):
    event = factory.event(community, organizer, custom_questions=QUESTIONS)
    data = {
        "intent": "anonymous-custom-questions",
        "name": "Jane Doe",
        "email": "jane@example.com",
    }

    invalid = client.post(
        _actions(event),
        data={**data, "custom_answers": json.dumps({"phone": "050 123"})},
        follow_redirects=False,
    )
    assert invalid.status_code == 400
    assert invalid.json()["error"] == registrations.REQUIRED_FIELDS_MISSING
    assert set(invalid.json()["validationErrors"]) == {"phone", "company"}

    answers = {"phone": "+994501234567", "company": "ACME"}
    valid = client.post(
        _actions(event),
        data={**data, "custom_answers": json.dumps(answers)},
        follow_redirects=False,
    )
    assert valid.status_code == 303
    [registration] = _registrations(session)
    assert registration.custom_answers == answers
    assert registration.anonymous_phone == "+994501234567"
    assert len(outbox.to("jane@example.com")) == 1


def test_register_requires_login(client, event):
    response = client.post(_actions(event), data={"intent": "register"})

    assert response.status_code == 401
    assert response.json()["error"] == registrations.LOGIN_REQUIRED


def test_register_confirms_immediately_for_signed_in_users(
    client, session, outbox, factory, event
):
    member = factory.user("sam@example.com", "Sam Member")

    response = client.post(_actions(event), data={"intent": "register"}, headers=auth(member))

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Successfully registered for the event!",
    }
    [registration] = _registrations(session)
    assert registration.user_id == member.id
    assert registration.is_verified is True
    assert registration.approval_status == "approved"

    [confirmation] = outbox.to("sam@example.com")
    assert confirmation["subject"] == "You're registered for Python Meetup!"
    assert attachment_text(confirmation) is not None
    [notice] = outbox.to("organizer@example.com")
    assert "Sam Member" in notice["html"]

    again = client.post(_actions(event), data={"intent": "register"}, headers=auth(member))
    assert again.status_code == 409
    assert again.json()["error"] == "You are already registered for this event"


def test_register_on_approval_event_sends_request_email(
    client, session, outbox, factory, community, organizer
):
    event = factory.event(community, organizer, is_approve_required=True)
    member = factory.user("sam@example.com", "Sam Member")

    response = client.post(_actions(event), data={"intent": "register"}, headers=auth(member))

    assert response.json()["message"] == "Registration request sent! Waiting for approval."
    assert _registrations(session)[0].approval_status == "pending"
    [request_email] = outbox.to("sam@example.com")
    assert request_email["subject"] == "Registration request received for Python Meetup"
    assert "attachments" not in request_email


def test_register_conflicts_with_existing_anonymous_row(client, session, factory, event):
    crud.create_registration(
        session,
        event=event,
        name="Sam",
        email="sam@example.com",
        is_verified=True,
        approval_status="approved",
    )
    session.commit()
    member = factory.user("sam@example.com")

    response = client.post(_actions(event), data={"intent": "register"}, headers=auth(member))

    assert response.status_code == 409
    assert response.json()["error"] == "This email is already registered for this event"
    assert len(_registrations(session)) == 1


def test_unregister_removes_registration(client, session, factory, event):
    member = factory.user("sam@example.com")
    client.post(_actions(event), data={"intent": "register"}, headers=auth(member))

    response = client.post(
        _actions(event), data={"intent": "unregister"}, headers=auth(member)
    )

    assert response.json() == {"success": True, "message": "Registration cancelled"}
    assert _registrations(session) == []


def test_subscribe_is_limited_to_external_events(client, factory, event):
    member = factory.user("sam@example.com")

    response = client.post(_actions(event), data={"intent": "subscribe"}, headers=auth(member))

    assert response.status_code == 400
    assert response.json()["error"] == registrations.SUBSCRIBE_EXTERNAL_ONLY


def test_anonymous_subscribe_to_external_event(
    client, session, outbox, factory, community, organizer
):
    event = factory.event(
        community,
        organizer,
        registration_type="external",
        external_registration_url="https://lu.ma/python-meetup",
        external_platform="luma",
    )
    data = {"intent": "anonymous-subscribe", "name": "Jane Doe", "email": "jane@example.com"}

    response = client.post(_actions(event), data=data)

    assert response.json() == {
        "success": True,
        "message": "Successfully subscribed for event updates!",
    }
    [registration] = _registrations(session)
    assert registration.is_verified is True
    [message] = outbox.to("jane@example.com")
    assert message["subject"] == "You're subscribed to updates for Python Meetup"
    assert "https://lu.ma/python-meetup" in message["html"]
    assert "Luma" in message["html"]

    again = client.post(_actions(event), data=data)
    assert again.status_code == 409
    assert again.json()["error"] == registrations.ALREADY_SUBSCRIBED


def test_unknown_intent_and_event(client, event):
    invalid = client.post(_actions(event), data={"intent": "dance"})
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Invalid action"

    missing = client.post(
        "/c/baku-devs/events/missing/actions", data={"intent": "anonymous-register"}
    )
    assert missing.status_code == 404
    assert missing.json()["error"] == "Event not found"
