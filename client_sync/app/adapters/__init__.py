"""
Adapters for external collaborators.

- api_client: httpx transport that turns HTTP failures into
  ClassifiedError at the boundary.
"""

from .api_client import ApiClient

__all__ = ["ApiClient"]
