"""SQLAlchemy models for every CRM table the services touch.

Importing this package registers all mappers on Base.metadata.
"""

from src.crm.models.events import (
    EventModel,
    EventRegistrationModel,
    EventReminderAutomationModel,
    EventReminderDeliveryModel,
)
from src.crm.models.follow_ups import FollowUpModel, FollowUpNotificationModel
from src.crm.models.payments import DonationModel, PaymentWebhookReceiptModel
from src.crm.models.reconciliation import (
    PaymentDiscrepancyModel,
    PaymentReconciliationModel,
    ReconciliationItemModel,
    StripeBalanceTransactionModel,
)
from src.crm.models.reports import (
    SavedReportModel,
    ScheduledReportModel,
    ScheduledReportRunModel,
)
from src.crm.models.shared import Contact, User
from src.crm.models.webhooks import WebhookDeliveryModel, WebhookEndpointModel

__all__ = [
    "Contact",
    "DonationModel",
    "EventModel",
    "EventRegistrationModel",
    "EventReminderAutomationModel",
    "EventReminderDeliveryModel",
    "FollowUpModel",
    "FollowUpNotificationModel",
    "PaymentDiscrepancyModel",
    "PaymentReconciliationModel",
    "PaymentWebhookReceiptModel",
    "ReconciliationItemModel",
    "SavedReportModel",
    "ScheduledReportModel",
    "ScheduledReportRunModel",
    "StripeBalanceTransactionModel",
    "User",
    "WebhookDeliveryModel",
    "WebhookEndpointModel",
]
