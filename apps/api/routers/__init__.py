"""Routers package."""

from . import (
    health,
    adventures,
    billing,
)
