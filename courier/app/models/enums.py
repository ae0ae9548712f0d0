"""
User roles enumeration.

Roles are carried in the bearer token issued by the account service.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Dispatch staff, assigns and cancels parcels
        DRIVER: Picks up, carries and drops off parcels
        CUSTOMER: Sends or receives parcels
    """
    ADMIN = "ADMIN"
    DRIVER = "DRIVER"
    CUSTOMER = "CUSTOMER"
