# Re-export Beanie documents
from .user import User, Address, NotificationPreferences, QuietHours
from .patient import Patient, Allergy, EmergencyContact
from .doctor import Doctor
from .notification import (
    ChannelDelivery,
    DeliveryStatus,
    DeviceToken,
    Notification,
    RelatedEntity,
)

DOCUMENT_MODELS = [User, Patient, Doctor, Notification, DeviceToken]
