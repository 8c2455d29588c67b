"""Shared constants."""

PROFILES_TABLE = "profiles"
SLOTS_TABLE = "parking_slots"
BOOKINGS_TABLE = "bookings"

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

SLOT_TYPE_REGULAR = "regular"
SLOT_TYPES = (SLOT_TYPE_REGULAR, "compact", "handicapped", "electric")

SLOT_FREE = "free"
SLOT_OCCUPIED = "occupied"
SLOT_RESERVED = "reserved"
SLOT_STATUSES = (SLOT_FREE, SLOT_OCCUPIED, SLOT_RESERVED)

BOOKING_ACTIVE = "active"
BOOKING_COMPLETED = "completed"
BOOKING_STATUSES = (BOOKING_ACTIVE, BOOKING_COMPLETED)

# Embedded relations resolvable from a bookings select: relation -> local key.
BOOKING_RELATIONS = {
    SLOTS_TABLE: "slot_id",
    PROFILES_TABLE: "user_id",
}
BOOKING_DETAIL_COLUMNS = f"*,{SLOTS_TABLE}(*),{PROFILES_TABLE}(*)"

SLOT_EDITABLE_FIELDS = ("slot_number", "location", "slot_type", "status")

DEFAULT_BOOKING_LIMIT = 50
