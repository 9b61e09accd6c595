import pytest

from pulsewatch.models.alert import AlertContact, AlertRule
from pulsewatch.models.integration import Integration
from pulsewatch.models.monitor import Monitor
from pulsewatch.models.user import User
from pulsewatch.recipients import (
    INCIDENT_RESOLVED,
    INCIDENT_STARTED,
    load_recipients,
    resolve_recipients,
)


def rule_for(contact: AlertContact, on_down: bool = True, on_up: bool = True) -> AlertRule:
    rule = AlertRule(monitor_id="m", alert_contact_id=contact.id, alert_on_down=on_down, alert_on_up=on_up)
    rule.alert_contact = contact
    return rule


def contact(name: str, config: dict) -> AlertContact:
    return AlertContact(id=f"c-{name}", workspace_id="w", name=name, type=config["type"], config=config)


def user(name: str, email: str, active: bool = True) -> User:
    return User(id=f"u-{name}", name=name, email=email, password_hash="x", is_active=active)


def integration(name: str, config: dict, enabled: bool = True) -> Integration:
    return Integration(id=f"i-{name}", workspace_id="w", name=name, type=config["type"], config=config, enabled=enabled)


SLACK = {"type": "slack", "webhook_url": "https://hooks.slack.com/services/T000/B000/XXX"}


def test_sources_are_merged_and_deduplicated():
    ops = contact("Ops team", {"type": "email", "address": "Ops@Example.com"})
    pager = contact("On call", {"type": "pagerduty", "routing_key": "R0UT1NG"})

    recipients = resolve_recipients(
        INCIDENT_STARTED,
        rules=[rule_for(ops), rule_for(pager)],
        members=[
            user("Olivia", "ops@example.com"),
            user("Sam", "sam@example.com"),
            user("Gone", "gone@example.com", active=False),
        ],
        integrations=[
            integration("Slack", SLACK),
            integration("Old slack", {**SLACK, "webhook_url": "https://hooks.slack.com/old"}, enabled=False),
        ],
    )

    assert [(r.source, r.name, r.channel.type) for r in recipients] == [
        ("rule", "Ops team", "email"),
        ("rule", "On call", "pagerduty"),
        ("member", "Sam", "email"),
        ("integration", "Slack", "slack"),
    ]


def test_integration_duplicating_a_contact_is_sent_once():
    slack = contact("Team slack", SLACK)

    recipients = resolve_recipients(
        INCIDENT_STARTED,
        rules=[rule_for(slack)],
        members=[],
        integrations=[integration("Workspace slack", SLACK)],
    )

    assert len(recipients) == 1
    assert recipients[0].name == "Team slack"


def test_rule_flags_filter_events():
    quiet = contact("Down only", {"type": "sms", "phone_number": "+15551234567"})
    rules = [rule_for(quiet, on_down=True, on_up=False)]

    assert len(resolve_recipients(INCIDENT_STARTED, rules, [], [])) == 1
    assert resolve_recipients(INCIDENT_RESOLVED, rules, [], []) == []


def test_members_always_notified():
    recipients = resolve_recipients(INCIDENT_RESOLVED, [], [user("Sam", "sam@example.com")], [])
    assert len(recipients) == 1
    assert recipients[0].channel.address == "sam@example.com"


@pytest.mark.asyncio
async def test_load_recipients(make_monitor, workspace, session_factory):
    monitor = await make_monitor()
    async with session_factory() as db:
        webhook = AlertContact(
            workspace_id=workspace.id,
            name="Hook",
            type="webhook",
            config={"type": "webhook", "url": "https://example.com/hook"},
        )
        db.add(webhook)
        await db.flush()
        db.add(AlertRule(monitor_id=monitor.id, alert_contact_id=webhook.id))
        db.add(Integration(workspace_id=workspace.id, name="Chat", type="discord",
                           config={"type": "discord", "webhook_url": "https://discord.com/api/webhooks/1/x"}))
        await db.commit()

        db_monitor = await db.get(Monitor, monitor.id)
        recipients = await load_recipients(db, db_monitor, INCIDENT_STARTED)

    assert [(r.source, r.channel.type) for r in recipients] == [
        ("rule", "webhook"),
        ("member", "email"),
        ("integration", "discord"),
    ]
