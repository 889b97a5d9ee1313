"""
Cross-Instance Settings Sync
============================

Optional observer layered on top of a ``DeliveryManager``. It is not part of
the queue's consistency model: it only announces what this instance saved
and, when another instance announces a change, re-submits a low-priority
load so local state catches up.

  SyncChannel           in-process broadcast bus shared by instances
  SettingsSyncObserver  bridges one manager's lifecycle events to a channel
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from courier.core.exceptions import CourierException
from courier.core.models import LifecycleEvent
from courier.core.types import SAVE_SETTINGS_ACTION, EventType, Priority
from courier.infra.runtime.manager import DeliveryManager
from courier.infra.telemetry import get_logger

logger = get_logger(__name__)

__all__ = ["SettingsSyncObserver", "SyncChannel", "SyncMessage"]

SETTINGS_CHANGED = "settings-changed"

@dataclass(frozen=True, slots=True)
class SyncMessage:
    type: str
    origin: str
    keys: tuple[str, ...] = ()
    request_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

SyncListener = Callable[[SyncMessage], None]

class SyncChannel:
    """Broadcast bus; every listener except the sender's own receives a message."""

    def __init__(self, name: str = "courier-settings") -> None:
        self.name = name
        self._listeners: list[SyncListener] = []

    def listen(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unlisten() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unlisten

    def publish(self, message: SyncMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as exc:  # listeners belong to other instances
                logger.error("sync_listener_failed", exc=exc, channel=self.name)

class SettingsSyncObserver:
    """
    Announces successful saves and reloads on remote change notices.

    Usage:
        observer = SettingsSyncObserver(manager, channel, origin="instance-a")
        observer.attach()
    """

    def __init__(
        self,
        manager: DeliveryManager,
        channel: SyncChannel,
        origin: str,
        *,
        resubmit_action: str = "load-settings",
    ) -> None:
        self._manager = manager
        self._channel = channel
        self._origin = origin
        self._resubmit_action = resubmit_action
        self._detach: list[Callable[[], None]] = []
        self.received = 0
        self._log = logger.bind(origin=origin)

    @property
    def attached(self) -> bool:
        return bool(self._detach)

    def attach(self) -> None:
        if self._detach:
            return
        self._detach = [
            self._manager.subscribe(self._on_event),
            self._channel.listen(self._on_message),
        ]

    def detach(self) -> None:
        for undo in self._detach:
            undo()
        self._detach = []

    def _on_event(self, event: LifecycleEvent) -> None:
        if event.type != EventType.SUCCEEDED or event.action != SAVE_SETTINGS_ACTION:
            return
        self._channel.publish(
            SyncMessage(
                type=SETTINGS_CHANGED,
                origin=self._origin,
                keys=tuple(event.detail.get("payloadKeys", ())),
                request_id=event.request_id,
            )
        )

    def _on_message(self, message: SyncMessage) -> None:
        if message.origin == self._origin or message.type != SETTINGS_CHANGED:
            return
        self.received += 1
        self._log.info(
            "remote_settings_changed", sender=message.origin, keys=",".join(message.keys)
        )
        try:
            future = self._manager.submit_nowait(
                self._resubmit_action, {}, priority=Priority.LOW
            )
        except CourierException as exc:
            self._log.warning("sync_resubmit_rejected", reason=exc.detail)
            return
        future.add_done_callback(self._log_reload)

    @staticmethod
    def _log_reload(future: asyncio.Future[Any]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("sync_reload_failed", reason=str(error))
