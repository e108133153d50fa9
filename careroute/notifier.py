"""
Fire-and-forget notification delivery.

Callers never await delivery: ``notify`` schedules the transport on the
running loop and returns. Transport failures are logged and dropped so they
can't fail the state change that triggered them.
"""

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from careroute.models import Channel, Notification, RecipientRole

Transport = Callable[[Notification], Awaitable[None]]


async def log_transport(notification: Notification) -> None:
    logger.info(
        f"[{notification.channel}] {notification.event_type} -> "
        f"{notification.role}:{notification.recipient_id}: {notification.title}"
    )


class Notifier:
    def __init__(
        self,
        transport: Transport = log_transport,
        operator_ids: list[str] | None = None,
    ) -> None:
        self._transport = transport
        self.operator_ids = list(operator_ids or [])
        self._pending: set[asyncio.Task] = set()

    def notify(
        self,
        recipient_id: str,
        role: RecipientRole,
        channel: Channel,
        event_type: str,
        title: str,
        body: str,
        data: dict | None = None,
    ) -> None:
        notification = Notification(
            recipient_id=recipient_id,
            role=role,
            channel=channel,
            event_type=event_type,
            title=title,
            body=body,
            data=data or {},
        )
        self._dispatch(notification)

    def notify_operators(
        self,
        event_type: str,
        title: str,
        body: str,
        data: dict | None = None,
        channel: Channel = Channel.IN_APP,
    ) -> None:
        if not self.operator_ids:
            logger.warning(f"No operators configured, {event_type} alert not delivered: {body}")
        for operator_id in self.operator_ids:
            self.notify(operator_id, RecipientRole.ADMIN, channel, event_type, title, body, data)

    def _dispatch(self, notification: Notification) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(
                f"No running event loop, dropping {notification.event_type} "
                f"for {notification.recipient_id}"
            )
            return

        task = loop.create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._transport(notification)
        except Exception as exc:
            logger.error(
                f"Failed to send {notification.event_type} notification to "
                f"{notification.recipient_id}: {exc}"
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
