from .connection import get_engine, get_session_factory, make_session_factory, init_db, Base

# Import precision search models to ensure they are registered with Base
from .models import (
    TransactionDB, DocumentDB, FileConnectionDB, PartnerDB, MailboxDB,
    PrecisionSearchQueueDB, TransactionSearchDB
)

__all__ = [
    'get_engine', 'get_session_factory', 'make_session_factory', 'init_db', 'Base',
    'TransactionDB', 'DocumentDB', 'FileConnectionDB', 'PartnerDB', 'MailboxDB',
    'PrecisionSearchQueueDB', 'TransactionSearchDB',
]
