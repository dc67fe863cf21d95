"""数据源客户端模块"""

from .base import WriteAction, WriteOp, OpResult, BatchResult, RateLimiter, chunked
from .airtable import AirtableClient, AirtableTable, AirtableField
from .sheets import (
    GoogleSheetsClient,
    SheetProperties,
    SheetRow,
    SheetSnapshot,
    column_number_to_letter,
    column_letter_to_number,
)

__all__ = [
    "WriteAction",
    "WriteOp",
    "OpResult",
    "BatchResult",
    "RateLimiter",
    "chunked",
    "AirtableClient",
    "AirtableTable",
    "AirtableField",
    "GoogleSheetsClient",
    "SheetProperties",
    "SheetRow",
    "SheetSnapshot",
    "column_number_to_letter",
    "column_letter_to_number",
]
