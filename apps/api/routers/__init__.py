"""Routers package."""

from . import (
    health,
    credits,
    promotions,
    billing,
    admin,
)
