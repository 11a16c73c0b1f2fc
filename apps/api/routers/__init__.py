"""Routers package."""

from . import (
    health,
    auth,
    projects,
    billing,
    webhooks,
)
