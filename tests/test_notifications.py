from __future__ import annotations

import pytest

from gatherly import crud
from gatherly.notifications import (
    CollaborationAcceptedNotification,
    RegistrationNotification,
    dispatch_notification,
    notification_adapter,
)


@pytest.fixture()
def world(factory, session):
    organizer = factory.user("organizer@example.com", "Olivia Organizer")
    host_admin = factory.user("host-admin@example.com", "Hana Admin")
    host_member = factory.user("host-member@example.com")
    co_owner = factory.user("co-owner@example.com")
    co_member = factory.user("co-member@example.com")
    pending_owner = factory.user("pending-owner@example.com")
    host = factory.community(
        "Baku Devs", organizer, admins=[host_admin], members=[host_member]
    )
    co_host = factory.community("PyLadies Baku", co_owner, members=[co_member, organizer])
    pending = factory.community("Data Club", pending_owner)
    event = factory.event(host, organizer)
    collaboration = crud.create_collaboration_invite(
        session, event=event, community=co_host, invited_by=organizer
    )
    crud.set_collaboration_status(session, collaboration=collaboration, status="accepted")
    crud.create_collaboration_invite(
        session, event=event, community=pending, invited_by=organizer
    )
    session.commit()
    return {"host": host, "co_host": co_host, "event": event}


def _accepted(world, kind: str) -> CollaborationAcceptedNotification:
    return notification_adapter.validate_python(
        {
            "type": f"collaboration-accepted-{kind}-event",
            "eventId": world["event"].id,
            "hostCommunityId": world["host"].id,
            "coHostCommunityId": world["co_host"].id,
        }
    )


def test_payloads_are_discriminated_on_type(world):
    accepted = _accepted(world, "new")
    registration = notification_adapter.validate_python(
        {
            "type": "registration-notification",
            "eventId": world["event"].id,
            "registrantName": "Jane",
            "registrantEmail": "jane@example.com",
        }
    )

    assert isinstance(accepted, CollaborationAcceptedNotification)
    assert accepted.is_new_event
    assert not _accepted(world, "existing").is_new_event
    assert isinstance(registration, RegistrationNotification)


def test_new_event_fan_out_reaches_both_communities_once(session, mailer, outbox, world):
    result = dispatch_notification(session, mailer, _accepted(world, "new"))

    assert result.success
    assert result.payload == {"sent": 5, "failed": 0}
    recipients = sorted(message["to"][0] for message in outbox.messages)
    assert recipients == [
        "co-member@example.com",
        "co-owner@example.com",
        "host-admin@example.com",
        "host-member@example.com",
        "organizer@example.com",
    ]


def test_existing_event_fan_out_reaches_co_host_members_only(
    session, mailer, outbox, world
):
    result = dispatch_notification(session, mailer, _accepted(world, "existing"))

    assert result.payload == {"sent": 3, "failed": 0}
    recipients = sorted(message["to"][0] for message in outbox.messages)
    assert recipients == [
        "co-member@example.com",
        "co-owner@example.com",
        "organizer@example.com",
    ]
    assert all(
        message["subject"] == "PyLadies Baku is co-hosting Python Meetup"
        for message in outbox.messages
    )


def test_registration_notice_goes_to_admins_of_accepted_collaborators(
    session, mailer, outbox, world
):
    payload = RegistrationNotification(
        type="registration-notification",
        event_id=world["event"].id,
        registrant_name="Jane Doe",
        registrant_email="jane@example.com",
    )

    result = dispatch_notification(session, mailer, payload)

    assert result.payload == {"sent": 3, "failed": 0}
    recipients = sorted(message["to"][0] for message in outbox.messages)
    assert recipients == [
        "co-owner@example.com",
        "host-admin@example.com",
        "organizer@example.com",
    ]
    [admin_notice] = outbox.to("host-admin@example.com")
    assert "Hi Hana Admin" in admin_notice["html"]
    assert "jane@example.com" in admin_notice["html"]
    assert "PyLadies Baku" in admin_notice["html"]


def test_failed_sends_are_counted_not_raised(session, mailer, outbox, world):
    outbox.fail_for.add("co-member@example.com")

    result = dispatch_notification(session, mailer, _accepted(world, "existing"))

    assert result.payload == {"sent": 2, "failed": 1}


def test_unknown_event_is_reported(session, mailer, world):
    payload = RegistrationNotification(
        type="registration-notification",
        event_id="missing",
        registrant_name="Jane",
        registrant_email="jane@example.com",
    )

    result = dispatch_notification(session, mailer, payload)

    assert result.status_code == 404


def test_notification_endpoint_requires_secret(client, outbox, world):
    body = {
        "type": "collaboration-accepted-existing-event",
        "eventId": world["event"].id,
        "hostCommunityId": world["host"].id,
        "coHostCommunityId": world["co_host"].id,
    }

    unauthorized = client.post("/api/events/collaboration-notification", json=body)
    assert unauthorized.status_code == 401
    assert outbox.messages == []

    invalid = client.post(
        "/api/events/collaboration-notification",
        json={**body, "type": "party", "secret": "test-cron-secret"},
    )
    assert invalid.status_code == 400
    assert invalid.json() == {"error": "Invalid notification type"}

    response = client.post(
        "/api/events/collaboration-notification",
        json={**body, "secret": "test-cron-secret"},
    )
    assert response.status_code == 200
    assert response.json()["sent"] == 3
