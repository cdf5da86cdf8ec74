"""
Models for the database.
"""

from sqlalchemy.orm import declarative_base

# Create the declarative base that all models will inherit from
Base = declarative_base()

# Import all models after Base is defined
# flake8: noqa: E402
from .models import (
    InventoryTransaction,
    Invoice,
    Material,
    Order,
    Project,
    RefreshToken,
)
from .pipeline import (
    EventLog,
    ExportJob,
    JobRecord,
    KpiDailySnapshot,
    WebhookDelivery,
    WebhookSubscription,
)

# Re-export everything for convenience
__all__ = [
    "Base",
    "Material",
    "Order",
    "Project",
    "Invoice",
    "InventoryTransaction",
    "RefreshToken",
    "EventLog",
    "JobRecord",
    "KpiDailySnapshot",
    "ExportJob",
    "WebhookSubscription",
    "WebhookDelivery",
]
