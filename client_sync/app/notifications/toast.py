"""
Ephemeral toast queue with timed auto-expiry.
"""

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from shared.config import SyncSettings
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.scheduling import AsyncioScheduler, Scheduler, TimerHandle

DEFAULT_DURATION_MS = 5000

ToastCallback = Callable[[Tuple["Toast", ...]], None]


class ToastVariant(str, Enum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"
    SUCCESS = "success"


@dataclass(frozen=True)
class Toast:
    """A transient user-facing message."""
    id: str
    title: str
    description: Optional[str] = None
    variant: ToastVariant = ToastVariant.DEFAULT
    duration_ms: int = DEFAULT_DURATION_MS


class ToastNotifier:
    """
    In-memory toast queue owned by the active UI session.

    Every shown toast schedules exactly one removal ``duration_ms`` after it
    is created. Timers are keyed by toast id, so ``dismiss`` cancels in O(1).
    """

    ID_BYTES = 8

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        default_duration_ms: int = DEFAULT_DURATION_MS,
        metrics: Optional[MetricsCollector] = None,
    ):
        if default_duration_ms <= 0:
            raise ValueError("default_duration_ms must be positive")
        self.scheduler = scheduler or AsyncioScheduler()
        self.default_duration_ms = default_duration_ms
        self.metrics = metrics
        self.logger = get_logger("notifications.toast")

        # dicts keep insertion order, which is the display order
        self._toasts: Dict[str, Toast] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._subscribers: List[ToastCallback] = []

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "ToastNotifier":
        return cls(scheduler=scheduler, default_duration_ms=settings.toast_duration_ms, metrics=metrics)

    @property
    def toasts(self) -> Tuple[Toast, ...]:
        """Visible toasts in insertion order."""
        return tuple(self._toasts.values())

    def __len__(self) -> int:
        return len(self._toasts)

    def __contains__(self, toast_id: str) -> bool:
        return toast_id in self._toasts

    def show(
        self,
        title: str,
        description: Optional[str] = None,
        variant: Union[ToastVariant, str] = ToastVariant.DEFAULT,
        duration_ms: Optional[int] = None,
    ) -> str:
        """Add a toast and schedule its removal. Returns the toast id."""
        variant = ToastVariant(variant)
        if duration_ms is None or duration_ms == 0:
            duration_ms = self.default_duration_ms
        if duration_ms < 0:
            raise ValueError("duration_ms must be positive")

        toast = Toast(
            id=self._new_id(),
            title=title,
            description=description,
            variant=variant,
            duration_ms=duration_ms,
        )
        self._toasts[toast.id] = toast
        self._timers[toast.id] = self.scheduler.call_later(
            duration_ms / 1000.0,
            lambda: self._expire(toast.id)
        )

        if self.metrics:
            self.metrics.increment_counter("toasts_shown_total", variant=variant.value)
        self.logger.debug("Toast shown", toast_id=toast.id, variant=variant.value, duration_ms=duration_ms)
        self._notify()
        return toast.id

    def dismiss(self, toast_id: str) -> bool:
        """Remove a toast now and cancel its timer. Unknown ids are ignored."""
        timer = self._timers.pop(toast_id, None)
        if timer is not None:
            timer.cancel()
        if self._toasts.pop(toast_id, None) is None:
            return False
        self.logger.debug("Toast dismissed", toast_id=toast_id)
        self._notify()
        return True

    def clear(self) -> None:
        """Remove every toast and cancel every timer."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._toasts:
            self._toasts.clear()
            self._notify()

    def subscribe(self, callback: ToastCallback) -> Callable[[], None]:
        """Register ``callback`` for queue changes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _new_id(self) -> str:
        while True:
            toast_id = secrets.token_urlsafe(self.ID_BYTES)
            if toast_id not in self._toasts:
                return toast_id

    def _expire(self, toast_id: str) -> None:
        self._timers.pop(toast_id, None)
        if self._toasts.pop(toast_id, None) is None:
            return
        self.logger.debug("Toast expired", toast_id=toast_id)
        self._notify()

    def _notify(self) -> None:
        snapshot = self.toasts
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                self.logger.error("Toast subscriber failed", error=str(e), exc_info=True)
