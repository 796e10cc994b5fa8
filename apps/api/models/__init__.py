"""Models package."""

from .user import User
from .letter import Letter
from .letter_audit import LetterAuditEntry
from .allowance_account import AllowanceAccount
from .allowance_reservation import AllowanceReservation
from .allowance_ledger import AllowanceLedgerEntry
