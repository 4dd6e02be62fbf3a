"""
Session wiring for the client sync layer.

A SyncSession owns one instance of every component for the lifetime of an
application session. There is at most one active session per process; tests
build fresh components directly instead.
"""

from typing import Any, Mapping, Optional

import httpx

from shared.config import SyncSettings, get_config
from shared.errors import ClassifiedError, ErrorClassification, SessionError
from shared.logging import clear_context, configure_logging, get_logger, set_session_context
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.scheduling import Scheduler

from .adapters.api_client import ApiClient
from .caching.resource_cache import RemoteResourceCache
from .entitlements.client import BillingClient
from .entitlements.resolver import EntitlementResolver
from .i18n.catalog import BundleLoader, MessageCatalog
from .notifications.toast import ToastNotifier, ToastVariant

ERROR_MESSAGE_KEYS = {
    ErrorClassification.UNAUTHORIZED: "errors.unauthorized",
    ErrorClassification.NOT_FOUND: "errors.notFound",
    ErrorClassification.BAD_REQUEST: "errors.badRequest",
    ErrorClassification.TRANSIENT: "errors.transient",
    ErrorClassification.OTHER: "errors.other",
}

_session: Optional["SyncSession"] = None


class SyncSession:
    """Transport, cache, catalog, toasts and entitlements for one session."""

    def __init__(
        self,
        settings: SyncSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        scheduler: Optional[Scheduler] = None,
        loaders: Optional[Mapping[str, BundleLoader]] = None,
        metrics: Optional[MetricsCollector] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.settings = settings
        self.logger = get_logger("session.main")
        self.metrics = metrics or get_metrics_collector(settings.service_name)
        self.session_id = set_session_context(session_id=session_id, user_id=user_id)

        self.api = ApiClient.from_settings(settings, transport=transport)
        self.cache = RemoteResourceCache.from_settings(settings, scheduler=scheduler, metrics=self.metrics)
        self.catalog = MessageCatalog.from_settings(settings, loaders=loaders, metrics=self.metrics)
        self.catalog.activate(settings.default_locale)
        self.toasts = ToastNotifier.from_settings(settings, scheduler=scheduler, metrics=self.metrics)
        self.billing = BillingClient(self.api)
        self.entitlements = EntitlementResolver(
            self.cache,
            self.billing,
            locale=self.catalog.active_locale,
            metrics=self.metrics,
        )

        self._started = False
        self._disposed = False

    @classmethod
    def init(
        cls,
        settings: Optional[SyncSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        scheduler: Optional[Scheduler] = None,
        **kwargs: Any,
    ) -> "SyncSession":
        """Create the process-wide session. Raises if one is already active."""
        global _session
        if _session is not None:
            raise SessionError("A sync session is already active", details={"session_id": _session.session_id})

        settings = settings or get_config()
        configure_logging(settings.service_name, settings.log_level, json_logs=settings.env != "local")
        _session = cls(settings, transport=transport, scheduler=scheduler, **kwargs)
        _session.logger.info("Sync session initialized", env=settings.env, api_base_url=settings.api_base_url)
        return _session

    def start(self) -> None:
        """Mount the entitlement sources. Must run inside the event loop."""
        if self._disposed:
            raise SessionError("Sync session has been disposed", details={"session_id": self.session_id})
        if self._started:
            return
        self.entitlements.start()
        self._started = True

    def set_locale(self, locale: Optional[str]) -> str:
        """Switch the active locale and return the one actually activated."""
        bundle = self.catalog.activate(locale)
        self.entitlements.set_locale(bundle.locale)
        return bundle.locale

    def notify_error(self, error: ClassifiedError) -> str:
        """Show a destructive toast describing ``error``."""
        title = self.catalog.translate(ERROR_MESSAGE_KEYS[error.classification])
        return self.toasts.show(title, description=error.message, variant=ToastVariant.DESTRUCTIVE)

    async def upgrade_to_pro(self) -> Any:
        """Upgrade the plan, reporting the outcome as a toast."""
        try:
            result = await self.entitlements.upgrade_to_pro()
        except ClassifiedError as e:
            self.notify_error(e)
            raise
        self.toasts.show(self.catalog.translate("plans.upgraded"), variant=ToastVariant.SUCCESS)
        return result

    async def downgrade_to_free(self) -> Any:
        """Downgrade the plan, reporting the outcome as a toast."""
        try:
            result = await self.entitlements.downgrade_to_free()
        except ClassifiedError as e:
            self.notify_error(e)
            raise
        self.toasts.show(self.catalog.translate("plans.downgraded"), variant=ToastVariant.SUCCESS)
        return result

    async def dispose(self) -> None:
        """Tear the session down and release the process-wide slot."""
        global _session
        if self._disposed:
            return
        self._disposed = True

        # Cache first, so unmounting schedules no eviction timers
        self.cache.dispose()
        self.entitlements.stop()
        self.toasts.clear()
        await self.api.close()

        if _session is self:
            _session = None
        self.logger.info("Sync session disposed")
        clear_context()


def get_session() -> SyncSession:
    """Return the active session."""
    if _session is None:
        raise SessionError()
    return _session
