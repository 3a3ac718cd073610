"""Credential pool import, export and stock reporting."""

from .import_parser import (
    StockFileError,
    download_stock_document,
    encrypt_rows,
    make_txt_stream,
    parse_credential_lines,
)
from .stock_service import StockLine, StockService

__all__ = [
    "StockFileError",
    "StockLine",
    "StockService",
    "download_stock_document",
    "encrypt_rows",
    "make_txt_stream",
    "parse_credential_lines",
]
