from .drop import DropCreate, DropInDB, DropTicket, ActivationResult, DropStatusView, SweepReport
from .catalog import CatalogFileCreate, CatalogFileInDB, AutoDeleteTicket

__all__ = [
    "DropCreate", "DropInDB", "DropTicket", "ActivationResult", "DropStatusView", "SweepReport",
    "CatalogFileCreate", "CatalogFileInDB", "AutoDeleteTicket",
]
