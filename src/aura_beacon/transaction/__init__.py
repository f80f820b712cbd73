"""Transaction types. The processor lives in ``transaction.processor``."""

from .models import OrderResult, OrderTerms, Transaction, TransactionStatus

__all__ = ["OrderResult", "OrderTerms", "Transaction", "TransactionStatus"]
