"""
Client sync layer for the services marketplace.

This package holds the client-side data-synchronization and
entitlement-gating layer shared by every data-driven screen
(earnings, categories, cities, plans). It provides:

- app.caching: Key-indexed cache for async fetches with staleness,
  garbage collection and classified retry.
- app.entitlements: Plan/usage/limits merge and feature gating.
- app.i18n: Locale bundle loading with default-locale fallback.
- app.notifications: Timed toast queue.
- app.adapters: httpx transport that classifies failures once.
- app.main: Session lifecycle (init/dispose).

Guidelines:
- Everything runs on one event loop; no threads, no locks.
- No error in this layer should crash the process; failures surface as
  entry state or degraded UI.
"""
