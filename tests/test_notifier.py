from unittest.mock import AsyncMock

import pytest

from careroute.models import Channel, RecipientRole
from careroute.notifier import Notifier


@pytest.mark.asyncio
async def test_transport_failure_is_logged_not_raised() -> None:
    transport = AsyncMock(side_effect=ConnectionError("push gateway down"))
    notifier = Notifier(transport=transport)

    notifier.notify("patient-1", RecipientRole.PATIENT, Channel.PUSH, "TEST", "t", "b")
    await notifier.drain()

    transport.assert_awaited_once()


@pytest.mark.asyncio
async def test_operator_alerts_fan_out() -> None:
    transport = AsyncMock(return_value=None)
    notifier = Notifier(transport=transport, operator_ids=["admin-1", "admin-2"])

    notifier.notify_operators("SLA_BREACH", "t", "b", {"item_id": "C1"})
    await notifier.drain()

    recipients = sorted(args[0].recipient_id for args, _ in transport.await_args_list)
    assert recipients == ["admin-1", "admin-2"]
    assert all(args[0].role == RecipientRole.ADMIN for args, _ in transport.await_args_list)


@pytest.mark.asyncio
async def test_no_operators_configured() -> None:
    transport = AsyncMock(return_value=None)
    notifier = Notifier(transport=transport)

    notifier.notify_operators("SLA_BREACH", "t", "b")
    await notifier.drain()

    transport.assert_not_awaited()


def test_notify_without_event_loop_is_dropped() -> None:
    transport = AsyncMock(return_value=None)
    notifier = Notifier(transport=transport)

    notifier.notify("patient-1", RecipientRole.PATIENT, Channel.SMS, "TEST", "t", "b")

    transport.assert_not_called()
