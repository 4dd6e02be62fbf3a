"""
Locale-aware message catalog with default-locale fallback.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from shared.config import SyncSettings
from shared.errors import StructuralError
from shared.logging import get_logger, set_locale_context
from shared.metrics import MetricsCollector

BundleLoader = Callable[[], Mapping[str, Any]]
CatalogCallback = Callable[["LocaleBundle"], None]

MESSAGES_DIR = Path(__file__).resolve().parent / "messages"


def json_bundle_loader(path: Path) -> BundleLoader:
    """Loader that reads a JSON bundle from ``path`` on each call."""

    def load() -> Mapping[str, Any]:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    return load


def default_loaders(locales: Sequence[str], directory: Path = MESSAGES_DIR) -> Dict[str, BundleLoader]:
    """Map each locale to the packaged ``messages/<locale>.json`` bundle."""
    return {locale: json_bundle_loader(directory / f"{locale}.json") for locale in locales}


def _validate_messages(messages: Any, path: str = "") -> None:
    if not isinstance(messages, Mapping) or not messages:
        raise StructuralError(
            "Bundle must be a non-empty mapping",
            details={"path": path or "<root>"}
        )
    for key, value in messages.items():
        child = f"{path}.{key}" if path else str(key)
        if not isinstance(key, str):
            raise StructuralError("Bundle keys must be strings", details={"path": child})
        if isinstance(value, Mapping):
            _validate_messages(value, child)
        elif not isinstance(value, str):
            raise StructuralError("Bundle values must be strings", details={"path": child})


def _freeze(messages: Mapping[str, Any]) -> Mapping[str, Any]:
    """Read-only deep copy of a validated bundle."""
    return MappingProxyType({
        key: _freeze(value) if isinstance(value, Mapping) else value
        for key, value in messages.items()
    })


@dataclass(frozen=True)
class LocaleBundle:
    """Messages of a single locale."""
    locale: str
    messages: Mapping[str, Any]


class MessageCatalog:
    """
    Loads translated message bundles per locale.

    An unsupported locale is replaced by the default before loading. A bundle
    that fails to load or is structurally invalid is logged and replaced by
    the default locale's bundle. Only a failure of the default bundle itself
    is raised, as a StructuralError.

    Loading the default locale directly goes through the same path as any
    other locale.
    """

    def __init__(
        self,
        supported_locales: Sequence[str] = ("en", "pt", "es"),
        default_locale: str = "en",
        loaders: Optional[Mapping[str, BundleLoader]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.supported_locales = tuple(supported_locales)
        self.default_locale = default_locale
        self.metrics = metrics
        self.logger = get_logger("i18n.catalog")

        if default_locale not in self.supported_locales:
            raise ValueError(f"Default locale {default_locale!r} is not supported")

        loaders = default_loaders(self.supported_locales) if loaders is None else dict(loaders)
        missing = [locale for locale in self.supported_locales if locale not in loaders]
        if missing:
            raise ValueError(f"No bundle loader for locales: {', '.join(missing)}")
        unknown = [locale for locale in loaders if locale not in self.supported_locales]
        if unknown:
            raise ValueError(f"Bundle loaders for unsupported locales: {', '.join(unknown)}")
        self.loaders: Dict[str, BundleLoader] = loaders

        self._bundles: Dict[str, LocaleBundle] = {}
        self._active: Optional[LocaleBundle] = None
        self._subscribers: List[CatalogCallback] = []

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        loaders: Optional[Mapping[str, BundleLoader]] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "MessageCatalog":
        return cls(
            supported_locales=settings.supported_locales,
            default_locale=settings.default_locale,
            loaders=loaders,
            metrics=metrics,
        )

    @property
    def active_locale(self) -> Optional[str]:
        return self._active.locale if self._active else None

    @property
    def messages(self) -> Mapping[str, Any]:
        """Messages of the active bundle, empty before activation."""
        return self._active.messages if self._active else {}

    def resolve_locale(self, locale: Optional[str]) -> str:
        """Return ``locale`` if supported, else the default locale."""
        if locale and locale in self.supported_locales:
            return locale
        self.logger.info(
            "Unsupported locale requested, using default",
            requested=locale,
            default_locale=self.default_locale
        )
        self._record_fallback("unsupported")
        return self.default_locale

    def load(self, locale: Optional[str]) -> Mapping[str, Any]:
        """Load the messages for ``locale`` with default-locale fallback."""
        return self._load(locale).messages

    def activate(self, locale: Optional[str]) -> LocaleBundle:
        """Load ``locale`` and make it the active bundle."""
        bundle = self._load(locale)
        previous = self._active
        # Replaced wholesale, never merged with the previous locale
        self._active = bundle
        set_locale_context(bundle.locale)

        if previous is None or previous.locale != bundle.locale:
            self.logger.info("Locale activated", locale=bundle.locale)
            for callback in list(self._subscribers):
                try:
                    callback(bundle)
                except Exception as e:
                    self.logger.error("Catalog subscriber failed", error=str(e), exc_info=True)
        return bundle

    def subscribe(self, callback: CatalogCallback) -> Callable[[], None]:
        """Register ``callback`` for active locale changes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def translate(self, key: str, **params: Any) -> str:
        """
        Look up a dotted ``key`` in the active bundle.

        A missing key returns the key itself.
        """
        node: Any = self.messages
        for part in key.split("."):
            if not isinstance(node, Mapping) or part not in node:
                self.logger.debug("Missing message", key=key, locale=self.active_locale)
                return key
            node = node[part]

        if not isinstance(node, str):
            self.logger.debug("Message key is not a leaf", key=key, locale=self.active_locale)
            return key
        if not params:
            return node
        try:
            return node.format(**params)
        except (KeyError, IndexError) as e:
            self.logger.warning("Message formatting failed", key=key, error=str(e))
            return node

    def _load(self, locale: Optional[str]) -> LocaleBundle:
        requested = self.resolve_locale(locale)
        try:
            return self._load_bundle(requested)
        except StructuralError as e:
            if requested == self.default_locale:
                self.logger.error("Default locale bundle failed to load", locale=requested, error=e.message)
                raise
            self.logger.error(
                "Locale bundle failed to load, using default",
                locale=requested,
                default_locale=self.default_locale,
                error=e.message
            )
            self._record_fallback("load_error")

        try:
            return self._load_bundle(self.default_locale)
        except StructuralError as e:
            self.logger.error("Default locale bundle failed to load", locale=self.default_locale, error=e.message)
            raise

    def _load_bundle(self, locale: str) -> LocaleBundle:
        cached = self._bundles.get(locale)
        if cached is not None:
            return cached

        try:
            messages = self.loaders[locale]()
        except Exception as exc:
            raise StructuralError(
                "Locale bundle could not be loaded",
                details={"locale": locale, "error": str(exc)}
            ) from exc

        try:
            _validate_messages(messages)
        except StructuralError as exc:
            exc.details["locale"] = locale
            raise

        bundle = LocaleBundle(locale=locale, messages=_freeze(messages))
        self._bundles[locale] = bundle
        self.logger.debug("Locale bundle loaded", locale=locale)
        return bundle

    def _record_fallback(self, reason: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("locale_fallbacks_total", reason=reason)
