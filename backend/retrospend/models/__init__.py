from __future__ import annotations

from retrospend.models.category import Category
from retrospend.models.expense import Expense
from retrospend.models.import_job import ImportJob

__all__ = [
    "Category",
    "Expense",
    "ImportJob",
]
