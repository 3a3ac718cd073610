"""Admin-side credential pool operations."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from core.telemetry import logger
from database.models import Credential
from database.repos import CredentialRepository, ProductRepository
from services.orders.exceptions import ProductNotFoundError
from services.orders.rendering import CredentialBundle, WIB

from .import_parser import encrypt_rows, parse_credential_lines


@dataclass
class StockLine:
    product_id: int
    name: str
    price: int
    stock: int


class StockService:
    @staticmethod
    def get_stock(product_id: int) -> int:
        return CredentialRepository.get_stock_sync(product_id)

    @staticmethod
    def overview() -> List[StockLine]:
        """Every active product with its unsold count"""
        stock_map = CredentialRepository.get_stock_map_sync()
        return [
            StockLine(
                product_id=p.id,
                name=p.name,
                price=int(p.price or 0),
                stock=stock_map.get(p.id, 0),
            )
            for p in ProductRepository.list_products_sync()
        ]

    @staticmethod
    def add_from_text(product_id: int, text: str) -> int:
        """
        Imports pipe-delimited credentials into a product's pool

        Returns:
            Number of imported rows (0 when nothing parsed)

        Raises:
            ProductNotFoundError: unknown or non-purchasable product
        """
        product = ProductRepository.get_by_id_sync(product_id)
        if not product or product.is_category:
            raise ProductNotFoundError(f"product {product_id}")
        rows = parse_credential_lines(text)
        if not rows:
            return 0
        added = CredentialRepository.add_bulk_sync(product_id, encrypt_rows(rows))
        logger.info("Stock added", extra={"product_id": product_id, "count": added})
        return added

    @staticmethod
    def mark_sold(credential_ids: Sequence[int], order_id: int) -> int:
        return CredentialRepository.mark_sold_sync(credential_ids, order_id)

    @staticmethod
    def list_unsold(product_id: int, limit: Optional[int] = None) -> List[Credential]:
        return CredentialRepository.list_unsold_sync(product_id, limit)

    @staticmethod
    def export_lines(credentials: Sequence[Credential]) -> str:
        lines = []
        for idx, row in enumerate(credentials, start=1):
            bundle = CredentialBundle.from_row(row)
            lines.append(
                f"{idx}. {bundle.email}|{bundle.password or '-'}|"
                f"{bundle.pin or '-'}|{bundle.extra_info or '-'}"
            )
        return "\n".join(lines)

    @staticmethod
    def withdraw(product_id: int) -> str:
        """Removes the unsold pool of a product and returns it as export text"""
        product = ProductRepository.get_by_id_sync(product_id)
        if not product:
            raise ProductNotFoundError(f"product {product_id}")
        removed = CredentialRepository.withdraw_unsold_sync(product_id)
        logger.warning(
            "Stock withdrawn", extra={"product_id": product_id, "count": len(removed)}
        )
        stamp = datetime.now(timezone.utc).astimezone(WIB)
        header = (
            f"Export Stok: {product.name}\n"
            f"Tanggal: {stamp.strftime('%d %b %Y %H:%M')} WIB\n"
            f"Total: {len(removed)}\n\n"
        )
        return header + StockService.export_lines(removed)
