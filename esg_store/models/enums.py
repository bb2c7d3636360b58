"""Enums for the ESG store - these define the valid values for audit actions and emission data."""
from enum import Enum


class AuditAction(str, Enum):
    """The two kinds of write the audit ledger records. Removal is an Update of is_active."""
    INSERT = "Insert"
    UPDATE = "Update"


class EmissionScope(int, Enum):
    """GHG Protocol emission scopes."""
    SCOPE1 = 1
    SCOPE2 = 2
    SCOPE3 = 3


class Scope2Method(str, Enum):
    """Accounting method for purchased energy (scope 2)."""
    UNKNOWN = "Unknown"
    LOCATION_BASED = "LocationBased"
    MARKET_BASED = "MarketBased"
