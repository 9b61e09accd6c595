"""
Who gets told about an incident event.

Three sources feed one list: alert contacts bound to the monitor through
rules, every workspace member (as an implicit email contact) and every
enabled integration. Destinations that appear in more than one source are
delivered once.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pulsewatch.channels import ChannelConfig, EmailChannel, channel_key
from pulsewatch.models.alert import AlertRule
from pulsewatch.models.integration import Integration
from pulsewatch.models.monitor import Monitor
from pulsewatch.models.user import User
from pulsewatch.models.workspace import WorkspaceMember

INCIDENT_STARTED = "incident_started"
INCIDENT_RESOLVED = "incident_resolved"
INCIDENT_EVENTS = (INCIDENT_STARTED, INCIDENT_RESOLVED)


@dataclass(frozen=True)
class Recipient:
    source: str  # rule, member, integration
    name: str
    channel: ChannelConfig
    source_id: Optional[str] = None


def rule_allows(rule: AlertRule, event: str) -> bool:
    if event == INCIDENT_STARTED:
        return bool(rule.alert_on_down)
    if event == INCIDENT_RESOLVED:
        return bool(rule.alert_on_up)
    return False


def resolve_recipients(
    event: str,
    rules: Iterable[AlertRule],
    members: Iterable[User],
    integrations: Iterable[Integration],
) -> list[Recipient]:
    """Merge the three recipient sources for ``event``.

    ``rules`` must have their ``alert_contact`` loaded. The first source to
    name a destination wins, so rule contacts keep their own display name.
    """
    recipients: list[Recipient] = []
    seen: set[tuple[str, str]] = set()

    def add(recipient: Recipient) -> None:
        key = channel_key(recipient.channel)
        if key in seen:
            return
        seen.add(key)
        recipients.append(recipient)

    for rule in rules:
        if rule_allows(rule, event):
            contact = rule.alert_contact
            add(Recipient("rule", contact.name, contact.channel, contact.id))

    for user in members:
        if user.is_active:
            add(Recipient("member", user.name, EmailChannel(address=user.email), user.id))

    for integration in integrations:
        if integration.enabled:
            add(Recipient("integration", integration.name, integration.channel, integration.id))

    return recipients


async def load_recipients(db: AsyncSession, monitor: Monitor, event: str) -> list[Recipient]:
    rules = await db.execute(
        select(AlertRule)
        .where(AlertRule.monitor_id == monitor.id)
        .options(selectinload(AlertRule.alert_contact))
    )
    members = await db.execute(
        select(User)
        .join(WorkspaceMember, WorkspaceMember.user_id == User.id)
        .where(WorkspaceMember.workspace_id == monitor.workspace_id)
    )
    integrations = await db.execute(
        select(Integration).where(Integration.workspace_id == monitor.workspace_id)
    )
    return resolve_recipients(
        event,
        rules.scalars().all(),
        members.scalars().all(),
        integrations.scalars().all(),
    )
