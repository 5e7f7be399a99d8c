"""
API Routes Package
"""
from . import (
    health,
    payments,
    registrations,
    subscriptions,
)
