from tenderflow.repositories.bid_history import BidHistoryRepository
from tenderflow.repositories.bids import BidFilter, BidsRepository
from tenderflow.repositories.categories import CategoriesRepository
from tenderflow.repositories.notifications import NotificationsRepository
from tenderflow.repositories.tenders import TenderFilter, TendersRepository

__all__ = [
    "BidFilter",
    "BidHistoryRepository",
    "BidsRepository",
    "CategoriesRepository",
    "NotificationsRepository",
    "TenderFilter",
    "TendersRepository",
]
