from enum import Enum


class Role(str, Enum):
    """System roles for RBAC."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    NURSE = "nurse"
    TECHNICIAN = "technician"
    STAFF = "staff"
    ADMIN = "admin"


# Roles a user may pick for themselves at registration
PUBLIC_ROLES = {Role.PATIENT, Role.DOCTOR, Role.NURSE}


class NotificationCategory(str, Enum):
    APPOINTMENT = "appointment"
    PRESCRIPTION = "prescription"
    LAB_RESULT = "lab-result"
    MEDICAL_RECORD = "medical-record"
    BILLING = "billing"
    SYSTEM = "system"
    REMINDER = "reminder"
    ALERT = "alert"
    SECURITY = "security"
    HEALTH_TIP = "health-tip"
    ANNOUNCEMENT = "announcement"
    # Only used by the per-user test endpoint
    TEST = "test"


# Categories delivered regardless of user preferences
ALWAYS_HONORED_CATEGORIES = {NotificationCategory.SECURITY, NotificationCategory.ALERT}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Channel(str, Enum):
    IN_APP = "in-app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


# Delivery order for external channels
EXTERNAL_CHANNELS = [Channel.EMAIL, Channel.SMS, Channel.PUSH]


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class DeliveryState(str, Enum):
    NOT_SENT = "not_sent"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class Sensitivity(str, Enum):
    NORMAL = "normal"
    SENSITIVE = "sensitive"
    CONFIDENTIAL = "confidential"


# SMS is never used for these
SMS_RESTRICTED_SENSITIVITY = {Sensitivity.SENSITIVE, Sensitivity.CONFIDENTIAL}


class RelatedEntityType(str, Enum):
    APPOINTMENT = "appointment"
    PRESCRIPTION = "prescription"
    LAB_RESULT = "lab-result"
    MEDICAL_RECORD = "medical-record"
    PAYMENT = "payment"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer-not-to-say"


ACCESS_COOKIE_NAME = "accessToken"
REFRESH_COOKIE_NAME = "refreshToken"
