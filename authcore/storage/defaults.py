"""Starter data seeded for every newly created account."""

from __future__ import annotations

# (name, icon, color, type)
DEFAULT_CATEGORIES = (
    ("Food & Dining", "🍽️", "#FF5733", "EXPENSE"),
    ("Transportation", "🚗", "#33FF57", "EXPENSE"),
    ("Housing", "🏠", "#3357FF", "EXPENSE"),
    ("Utilities", "💡", "#FF33F5", "EXPENSE"),
    ("Healthcare", "🏥", "#33FFF5", "EXPENSE"),
    ("Salary", "💰", "#5733FF", "INCOME"),
    ("Investments", "📈", "#F5FF33", "INCOME"),
)

# name -> icon
DEFAULT_PAYMENT_METHODS = {
    "CASH": "cash",
    "CREDIT_CARD": "credit-card",
    "DEBIT_CARD": "debit-card",
    "BANK_TRANSFER": "bank",
    "CHECK": "check",
    "CRYPTO": "crypto",
    "OTHER": "other",
}
