"""Routers package."""

from . import (
    health,
    letters,
    review,
    billing,
)
