"""HTTP routers."""

from . import auth, entitlement, health, purchases, storage, webhooks

__all__ = ["auth", "entitlement", "health", "purchases", "storage", "webhooks"]
