"""Routers package."""

from . import (
    health,
    tokens,
    billing,
    demo,
    subscriptions,
)
