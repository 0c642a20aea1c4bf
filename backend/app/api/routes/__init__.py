# API Routes Module
from app.api.routes import (
    admin,
    papers,
    payments,
    referrals,
    subscriptions,
    webhooks,
)

__all__ = [
    "admin",
    "papers",
    "payments",
    "referrals",
    "subscriptions",
    "webhooks",
]
