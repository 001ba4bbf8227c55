"""
Notification decisions for incoming change events.

Each event is either suppressed (a redelivered duplicate), counted (an ordinary
new story bumps the passive "N new" counter), refreshed (an update to the item
currently on the breaking banner) or surfaced. Surfacing always shows an in-app
toast; a native OS notification is added only when permission is granted and an
audio cue is played when configured. The toast and native channels fail
independently: an error in one never prevents the other.

Permission is never requested implicitly. request_permission() is the only
place a prompt can be triggered.
"""

from __future__ import annotations

import abc
import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import structlog

from .audio import AudioCueEngine
from .config import NotificationsConfig
from .events import ChangeEvent, Operation
from .metrics import MetricsCollector

log = structlog.get_logger()


class Permission(str, enum.Enum):
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


class Decision(str, enum.Enum):
    SUPPRESSED = "suppressed"
    COUNTED = "counted"
    SURFACED = "surfaced"
    REFRESHED = "refreshed"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class NotificationState:
    permission: Permission = Permission.DEFAULT
    last_surfaced_id: str | None = None
    last_surfaced_table: str | None = None
    pending_count: int = 0


@dataclass(frozen=True)
class ToastAction:
    label: str
    url: str


class Toaster(abc.ABC):
    """In-app transient messages."""

    @abc.abstractmethod
    def show(
        self,
        message: str,
        level: str = "info",
        duration_ms: int = 4000,
        action: ToastAction | None = None,
    ) -> None:
        ...


class ConsoleToaster(Toaster):
    def show(
        self,
        message: str,
        level: str = "info",
        duration_ms: int = 4000,
        action: ToastAction | None = None,
    ) -> None:
        suffix = f"  [{action.label}: {action.url}]" if action else ""
        print(f"[{level}] {message}{suffix}", flush=True)


class NativeNotification(Protocol):
    def close(self) -> None:
        ...


class NativeNotifier(abc.ABC):
    """Operating-system notification capability."""

    @abc.abstractmethod
    def current_permission(self) -> Permission:
        ...

    @abc.abstractmethod
    async def request_permission(self) -> Permission:
        ...

    @abc.abstractmethod
    def show(
        self,
        title: str,
        *,
        body: str,
        icon: str,
        tag: str,
        require_interaction: bool,
        on_click: Callable[[], None],
    ) -> NativeNotification:
        ...


class NotificationDecisionEngine:
    """Turns classified change events into toasts, native notifications and cues."""

    def __init__(
        self,
        toaster: Toaster,
        notifier: NativeNotifier | None = None,
        audio: AudioCueEngine | None = None,
        focus_app: Callable[[], None] | None = None,
        config: NotificationsConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._toaster = toaster
        self._notifier = notifier
        self._audio = audio
        self._focus_app = focus_app
        self._config = config or NotificationsConfig()
        self._metrics = metrics
        self._dismiss_timers: set[asyncio.TimerHandle] = set()
        self.latest_breaking: Mapping[str, Any] | None = None
        self.state = NotificationState(
            permission=self._initial_permission(),
        )

    @property
    def is_supported(self) -> bool:
        return self._notifier is not None

    @property
    def permission(self) -> Permission:
        return self.state.permission

    def _initial_permission(self) -> Permission:
        if self._notifier is None:
            return Permission.DEFAULT
        try:
            return Permission(self._notifier.current_permission())
        except Exception as exc:
            log.warning("notifications.permission_unknown", error=str(exc))
            return Permission.DEFAULT

    async def request_permission(self) -> Permission:
        """Explicit, user-initiated permission prompt."""
        if self._notifier is None:
            log.info("notifications.unsupported")
            return self.state.permission
        if self.state.permission is not Permission.DEFAULT:
            return self.state.permission

        try:
            result = Permission(await self._notifier.request_permission())
        except Exception as exc:
            log.error("notifications.permission_request_failed", error=str(exc))
            return self.state.permission

        self.state.permission = result
        log.info("notifications.permission", permission=result.value)
        if result is Permission.GRANTED:
            self._show_toast("Breaking news notifications enabled!", level="success")
        elif result is Permission.DENIED:
            self._show_toast(
                "Notifications blocked. Enable them in your system settings.", level="error"
            )
        return result

    def reset_pending(self) -> None:
        self.state.pending_count = 0

    def close(self) -> None:
        """Cancel outstanding auto-dismiss timers."""
        for timer in self._dismiss_timers:
            timer.cancel()
        self._dismiss_timers.clear()

    def is_breaking(self, event: ChangeEvent) -> bool:
        return event.table == self._config.breaking_table or bool(
            event.payload.get("is_breaking")
        )

    def on_event(self, event: ChangeEvent) -> Decision:
        key = event.record_id
        if key is None:
            log.warning("notifications.missing_identity", table=event.table)
            return Decision.IGNORED

        if event.operation is Operation.INSERT:
            if self._is_last_surfaced(event, key):
                log.info("notifications.suppressed", id=key, table=event.table)
                if self._metrics:
                    self._metrics.inc("notifications_suppressed_total")
                return Decision.SUPPRESSED
            if self.is_breaking(event):
                return self._surface(event, key)
            self.state.pending_count += 1
            return Decision.COUNTED

        if event.operation is Operation.UPDATE and (
            self._is_last_surfaced(event, key)
            or event.table == self._config.breaking_table
        ):
            self.latest_breaking = event.payload
            return Decision.REFRESHED

        return Decision.IGNORED

    def _is_last_surfaced(self, event: ChangeEvent, key: str) -> bool:
        return (
            key == self.state.last_surfaced_id
            and event.table == self.state.last_surfaced_table
        )

    def _surface(self, event: ChangeEvent, key: str) -> Decision:
        payload = event.payload
        headline = str(payload.get("headline") or payload.get("title") or "Breaking news")
        self.latest_breaking = payload

        source_url = payload.get("source_url")
        toast_ok = self._show_toast(
            f"🔴 Breaking: {headline}",
            level="error",
            duration_ms=self._config.toast_duration_ms,
            action=ToastAction("Read More", str(source_url)) if source_url else None,
        )

        native_ok = False
        if self.state.permission is Permission.GRANTED and self._notifier is not None:
            native_ok = self._show_native(headline, key)

        if not (toast_ok or native_ok):
            log.error("notifications.surface_failed", id=key)
            return Decision.FAILED

        if self._audio is not None and self._config.audio_cue != "none":
            self._audio.play(self._config.audio_cue)

        self.state.last_surfaced_id = key
        self.state.last_surfaced_table = event.table
        if self._metrics:
            self._metrics.inc("notifications_surfaced_total")
        log.info("notifications.surfaced", id=key, native=native_ok, headline=headline[:80])
        return Decision.SURFACED

    def _show_toast(
        self,
        message: str,
        level: str = "info",
        duration_ms: int = 4000,
        action: ToastAction | None = None,
    ) -> bool:
        try:
            self._toaster.show(message, level=level, duration_ms=duration_ms, action=action)
        except Exception as exc:
            log.error("notifications.toast_failed", error=str(exc))
            return False
        return True

    def _show_native(self, headline: str, key: str) -> bool:
        notification: NativeNotification | None = None

        def on_click() -> None:
            try:
                if self._focus_app is not None:
                    self._focus_app()
            finally:
                if notification is not None:
                    notification.close()

        try:
            notification = self._notifier.show(
                self._config.title,
                body=headline,
                icon=self._config.icon,
                tag=f"breaking-{key}",
                require_interaction=True,
                on_click=on_click,
            )
        except Exception as exc:
            log.error("notifications.native_failed", id=key, error=str(exc))
            return False

        self._schedule_dismiss(notification)
        return True

    def _schedule_dismiss(self, notification: NativeNotification) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        def dismiss() -> None:
            self._dismiss_timers.discard(timer)
            try:
                notification.close()
            except Exception as exc:
                log.debug("notifications.dismiss_failed", error=str(exc))

        timer = loop.call_later(self._config.auto_dismiss_seconds, dismiss)
        self._dismiss_timers.add(timer)
