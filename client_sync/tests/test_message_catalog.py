"""
Unit tests for MessageCatalog.
"""

from collections.abc import Mapping

import pytest
from unittest.mock import MagicMock
from prometheus_client import CollectorRegistry

from shared.errors import StructuralError
from shared.metrics import MetricsCollector
from shared.test_helpers import TestDataFactory

from client_sync.app.i18n import MessageCatalog, default_loaders


def loaders_for(bundles):
    return {locale: MagicMock(return_value=messages) for locale, messages in bundles.items()}


class TestMessageCatalog:
    """Test cases for MessageCatalog."""

    @pytest.fixture
    def bundles(self):
        """In-memory bundles for en, pt and es."""
        return TestDataFactory.create_bundles()

    @pytest.fixture
    def loaders(self, bundles):
        """Loader mocks returning the bundles."""
        return loaders_for(bundles)

    @pytest.fixture
    def catalog(self, loaders):
        """Catalog over the in-memory bundles."""
        return MessageCatalog(loaders=loaders)

    def test_load_supported_locale(self, catalog, bundles):
        """Test loading a supported locale."""
        assert catalog.load("pt") == bundles["pt"]

    @pytest.mark.parametrize("locale", ["xx-invalid", "", None, "fr"])
    def test_invalid_locale_loads_default(self, catalog, locale):
        """Test that an unsupported locale gives the default bundle."""
        assert catalog.load(locale) == catalog.load("en")

    def test_failing_loader_falls_back_without_raising(self, bundles):
        """Test that a load failure for pt returns the en bundle."""
        loaders = loaders_for(bundles)
        loaders["pt"] = MagicMock(side_effect=OSError("bundle missing"))
        catalog = MessageCatalog(loaders=loaders)

        assert catalog.load("pt") == bundles["en"]

    @pytest.mark.parametrize("broken", [{}, [], "text", {"common": 1}, {"common": {}}])
    def test_structurally_invalid_bundle_falls_back(self, bundles, broken):
        """Test that a malformed pt bundle returns the en bundle."""
        loaders = loaders_for(bundles)
        loaders["pt"] = MagicMock(return_value=broken)
        catalog = MessageCatalog(loaders=loaders)

        assert catalog.load("pt") == bundles["en"]

    def test_default_failure_raises(self, bundles):
        """Test that a broken default bundle is fatal."""
        loaders = loaders_for(bundles)
        loaders["en"] = MagicMock(return_value={})
        loaders["pt"] = MagicMock(side_effect=OSError("bundle missing"))
        catalog = MessageCatalog(loaders=loaders)

        with pytest.raises(StructuralError):
            catalog.load("en")
        with pytest.raises(StructuralError):
            catalog.load("xx-invalid")
        with pytest.raises(StructuralError):
            catalog.load("pt")

    def test_default_failure_does_not_affect_valid_locales(self, bundles):
        """Test that only a fallback needs the default."""
        loaders = loaders_for(bundles)
        loaders["en"] = MagicMock(side_effect=OSError("bundle missing"))
        catalog = MessageCatalog(loaders=loaders)

        assert catalog.load("es") == bundles["es"]

    def test_bundles_are_cached(self, catalog, loaders):
        """Test that each locale is loaded once per session."""
        catalog.load("pt")
        catalog.load("pt")
        catalog.activate("pt")

        assert loaders["pt"].call_count == 1

    def test_loaded_bundles_are_read_only(self, catalog, bundles):
        """Test that callers cannot corrupt the cached bundle."""
        messages = catalog.load("pt")

        with pytest.raises(TypeError):
            messages["common"] = {}
        with pytest.raises(TypeError):
            messages["common"]["saved"] = "Oops"

        bundles["pt"]["common"]["saved"] = "Changed by loader owner"
        catalog.activate("pt")
        assert catalog.translate("common.saved") == "Salvo"
        assert catalog.messages["common"]["saved"] == "Salvo"

    def test_failed_load_is_retried_next_time(self, bundles):
        """Test that failures are not cached."""
        loaders = loaders_for(bundles)
        loaders["pt"] = MagicMock(side_effect=[OSError("flaky"), bundles["pt"]])
        catalog = MessageCatalog(loaders=loaders)

        assert catalog.load("pt") == bundles["en"]
        assert catalog.load("pt") == bundles["pt"]

    def test_missing_loader_is_rejected(self, bundles):
        """Test loader validation against the supported set."""
        loaders = loaders_for(bundles)
        del loaders["es"]

        with pytest.raises(ValueError):
            MessageCatalog(loaders=loaders)

    def test_unknown_loader_is_rejected(self, bundles):
        """Test that loaders for unsupported locales are rejected."""
        loaders = loaders_for(bundles)
        loaders["fr"] = MagicMock(return_value=bundles["en"])

        with pytest.raises(ValueError):
            MessageCatalog(loaders=loaders)

    def test_unsupported_default_is_rejected(self, loaders):
        """Test default locale validation."""
        with pytest.raises(ValueError):
            MessageCatalog(default_locale="fr", loaders=loaders)

    def test_activate_replaces_bundle_wholesale(self, bundles):
        """Test that a locale switch never mixes languages."""
        bundles["pt"] = {"common": {"saved": "Salvo"}}
        catalog = MessageCatalog(loaders=loaders_for(bundles))

        catalog.activate("en")
        assert catalog.translate("plans.upgrade") == "Upgrade"

        catalog.activate("pt")
        assert catalog.active_locale == "pt"
        assert catalog.translate("common.saved") == "Salvo"
        assert catalog.translate("plans.upgrade") == "plans.upgrade"

    def test_activate_failed_locale_uses_default(self, bundles):
        """Test activation with fallback."""
        loaders = loaders_for(bundles)
        loaders["pt"] = MagicMock(side_effect=OSError("bundle missing"))
        catalog = MessageCatalog(loaders=loaders)

        bundle = catalog.activate("pt")

        assert bundle.locale == "en"
        assert catalog.active_locale == "en"

    def test_translate_formats_params(self, catalog):
        """Test parameter substitution."""
        catalog.activate("pt")
        assert catalog.translate("common.greeting", name="Ana") == "Olá, Ana"

    def test_translate_missing_param_returns_template(self, catalog):
        """Test formatting with a missing parameter."""
        catalog.activate("en")
        assert catalog.translate("common.greeting", other="x") == "Hello, {name}"

    def test_translate_before_activation_returns_key(self, catalog):
        """Test lookups with no active bundle."""
        assert catalog.translate("common.saved") == "common.saved"

    def test_translate_non_leaf_returns_key(self, catalog):
        """Test a key pointing at a nested mapping."""
        catalog.activate("en")
        assert catalog.translate("common") == "common"

    def test_subscribers_notified_on_switch(self, catalog):
        """Test locale change notifications."""
        seen = []
        catalog.subscribe(lambda bundle: seen.append(bundle.locale))

        catalog.activate("en")
        catalog.activate("en")
        catalog.activate("es")

        assert seen == ["en", "es"]

    def test_fallback_metrics(self, bundles):
        """Test fallback counters by reason."""
        registry = CollectorRegistry()
        loaders = loaders_for(bundles)
        loaders["pt"] = MagicMock(side_effect=OSError("bundle missing"))
        catalog = MessageCatalog(loaders=loaders, metrics=MetricsCollector("test", registry=registry))

        catalog.load("xx-invalid")
        catalog.load("pt")

        assert registry.get_sample_value("locale_fallbacks_total", {"reason": "unsupported"}) == 1.0
        assert registry.get_sample_value("locale_fallbacks_total", {"reason": "load_error"}) == 1.0


class TestPackagedBundles:
    """Test cases for the bundles shipped with the package."""

    def test_default_loaders_cover_supported_locales(self):
        """Test the packaged loader table."""
        assert set(default_loaders(["en", "pt", "es"])) == {"en", "pt", "es"}

    @pytest.mark.parametrize("locale", ["en", "pt", "es"])
    def test_packaged_bundle_loads(self, locale):
        """Test that every packaged bundle is structurally valid."""
        catalog = MessageCatalog()
        bundle = catalog.activate(locale)

        assert bundle.locale == locale
        assert set(bundle.messages) == {"common", "plans", "errors"}

    def test_packaged_bundles_share_keys(self):
        """Test that translations cover the same keys."""
        catalog = MessageCatalog()

        def leaves(node, prefix=""):
            keys = set()
            for key, value in node.items():
                path = f"{prefix}.{key}" if prefix else key
                keys |= leaves(value, path) if isinstance(value, Mapping) else {path}
            return keys

        english = leaves(catalog.load("en"))
        assert leaves(catalog.load("pt")) == english
        assert leaves(catalog.load("es")) == english

    def test_packaged_translation(self):
        """Test a translated lookup."""
        catalog = MessageCatalog()
        catalog.activate("pt")
        assert catalog.translate("plans.upgradeRequired", feature="Analytics") == "Analytics está disponível no plano PRO"
