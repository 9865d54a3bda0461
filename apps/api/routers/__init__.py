"""Routers package."""

from . import (
    health,
    feedgen,
)
