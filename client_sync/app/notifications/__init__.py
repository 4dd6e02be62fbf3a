"""Transient user-facing notifications."""

from .toast import Toast, ToastNotifier, ToastVariant

__all__ = ["Toast", "ToastNotifier", "ToastVariant"]
