from .clarification import ClarificationDialogue, chat_about_receipt
from .core import Attachment, Leg, Trip
from .grouping import TripGrouper
from .ledger import Ledger, LedgerBuilder, build_ledger
from .models import Receipt
from .policy import DEFAULT_POLICY, PolicyTables
from .receipts import ReceiptNormalizer, UnparseableResponseError
from .regions import RegionalMatcher, detect_metro, get_lodging_region
from .rules import ReimbursementCalculator
from .session import SettlementSession
from .ui import render_settlement_table

__all__ = [
    "Attachment",
    "ClarificationDialogue",
    "DEFAULT_POLICY",
    "Leg",
    "Ledger",
    "LedgerBuilder",
    "PolicyTables",
    "Receipt",
    "ReceiptNormalizer",
    "RegionalMatcher",
    "ReimbursementCalculator",
    "SettlementSession",
    "Trip",
    "TripGrouper",
    "UnparseableResponseError",
    "build_ledger",
    "chat_about_receipt",
    "detect_metro",
    "get_lodging_region",
    "render_settlement_table",
]
