"""
Central constants for the AutoExplora application.

Enum-like values are stored as plain strings in the database; these tuples are
the single source of truth for what each column may hold.
"""
from __future__ import annotations

# Users / dealers
PLATFORM_ROLES = ("admin", "moderator")
DEALER_ROLES = ("OWNER", "MANAGER", "SALES")
DEALER_MANAGER_ROLES = ("OWNER", "MANAGER")
DEALER_STATUSES = ("PENDING", "ACTIVE", "SUSPENDED", "REJECTED")
DEALER_TYPES = ("CONCESIONARIO", "AUTOMOTORA", "RENT_A_CAR")

# Legal admin transitions for a dealer account.
DEALER_TRANSITIONS = {
    "PENDING": ("ACTIVE", "REJECTED"),
    "ACTIVE": ("SUSPENDED",),
    "SUSPENDED": ("ACTIVE",),
    "REJECTED": ("ACTIVE",),
}

# Listings
VEHICLE_TYPES = ("AUTO", "MOTO", "COMERCIAL")
VEHICLE_CATEGORIES = {
    "AUTO": ("SEDAN", "HATCHBACK", "SUV", "STATION_WAGON", "COUPE", "DEPORTIVO", "VAN", "PICKUP"),
    "MOTO": ("MOTO_CALLE", "MOTO_TOURING", "MOTO_DEPORTIVA", "MOTO_CROSS", "SCOOTER", "CUATRIMOTO"),
    "COMERCIAL": ("CAMION", "FURGON", "BUS", "MINIBUS"),
}
CONDITIONS = ("NUEVO", "USADO")
FUEL_TYPES = ("BENCINA", "DIESEL", "HIBRIDO", "ELECTRICO", "GAS", "OTRO")
TRANSMISSIONS = ("MANUAL", "AUTOMATICA")
TRACTIONS = ("2WD", "4WD", "AWD")
LISTING_STATUSES = ("DRAFT", "ACTIVE", "PAUSED", "SOLD", "EXPIRED", "REJECTED")

# Transitions an owner may request on their own listing.
LISTING_OWNER_TRANSITIONS = {
    "DRAFT": ("ACTIVE",),
    "ACTIVE": ("PAUSED", "SOLD"),
    "PAUSED": ("ACTIVE", "SOLD"),
    "EXPIRED": ("ACTIVE",),
}
# The owner table plus: reject anything not sold, reinstate rejected listings.
LISTING_ADMIN_TRANSITIONS = {
    "DRAFT": ("ACTIVE", "REJECTED"),
    "ACTIVE": ("PAUSED", "SOLD", "REJECTED"),
    "PAUSED": ("ACTIVE", "SOLD", "REJECTED"),
    "EXPIRED": ("ACTIVE", "REJECTED"),
    "REJECTED": ("ACTIVE",),
}

MIN_YEAR = 1990
MIN_PRICE = 100_000
MAX_PRICE = 500_000_000
MAX_MILEAGE = 1_000_000
MIN_IMAGES = 3
MAX_IMAGES = 15
MAX_IMAGE_BYTES = 10 * 1024 * 1024
ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")

DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 48

# CRM
LEAD_STATUSES = ("NEW", "CONTACTED", "QUALIFIED", "CONVERTED", "LOST")
LEAD_TRANSITIONS = {
    "NEW": ("CONTACTED", "QUALIFIED", "LOST"),
    "CONTACTED": ("QUALIFIED", "CONVERTED", "LOST"),
    "QUALIFIED": ("CONVERTED", "LOST"),
    "LOST": ("NEW",),
    "CONVERTED": (),
}
OPEN_LEAD_STATUSES = ("NEW", "CONTACTED", "QUALIFIED")
LEAD_SOURCES = ("microsite", "marketplace", "conversation", "manual")
ACTIVITY_TYPES = ("NOTE", "CALL", "EMAIL", "WHATSAPP", "TEST_DRIVE", "STATUS_CHANGE", "ASSIGNMENT")
USER_ACTIVITY_TYPES = ("NOTE", "CALL", "EMAIL", "WHATSAPP", "TEST_DRIVE")
CONTACT_ACTIVITY_TYPES = ("CALL", "EMAIL", "WHATSAPP")
TASK_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
OPPORTUNITY_STATUSES = ("OPEN", "WON", "LOST")
TEST_DRIVE_STATUSES = ("SCHEDULED", "COMPLETED", "CANCELLED", "NO_SHOW")
TEMPLATE_CHANNELS = ("EMAIL", "WHATSAPP")

# Microsite
DOMAIN_STATUSES = ("PENDING", "VERIFIED", "FAILED")
RESERVED_PAGE_SLUGS = frozenset({"vehiculos", "contacto"})
HEADER_STYLES = ("default", "centered", "minimal")
FOOTER_STYLES = ("default", "minimal")

# Moderation
REPORT_REASONS = ("FRAUD", "INAPPROPRIATE", "DUPLICATE", "WRONG_INFO", "SOLD", "OTHER")
REPORT_STATUSES = ("PENDING", "UNDER_REVIEW", "RESOLVED", "DISMISSED")
OPEN_REPORT_STATUSES = ("PENDING", "UNDER_REVIEW")
REPORT_TRANSITIONS = {
    "PENDING": ("UNDER_REVIEW", "RESOLVED", "DISMISSED"),
    "UNDER_REVIEW": ("RESOLVED", "DISMISSED"),
    "RESOLVED": (),
    "DISMISSED": (),
}

# Notifications
NOTIFICATION_TYPES = (
    "NEW_LEAD",
    "LEAD_ASSIGNED",
    "LEAD_STATUS_CHANGE",
    "FOLLOW_UP_REMINDER",
    "TEST_DRIVE_REMINDER",
    "NEW_MESSAGE",
    "INVENTORY_MATCH",
    "SYSTEM",
)
NOTIFICATION_RETENTION_DAYS = 30

MAX_MESSAGE_LENGTH = 2000
MAX_REPORT_DESCRIPTION = 1000
