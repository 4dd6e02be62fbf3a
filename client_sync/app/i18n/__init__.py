"""Translated message bundles and the locale fallback catalog."""

from .catalog import (
    BundleLoader,
    LocaleBundle,
    MessageCatalog,
    default_loaders,
    json_bundle_loader,
)

__all__ = [
    "BundleLoader",
    "LocaleBundle",
    "MessageCatalog",
    "default_loaders",
    "json_bundle_loader",
]
