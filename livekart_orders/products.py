"""
Order Service — 商品参照 (Product Lookup)

注文時点の正しい価格・在庫を products テーブルから読む。
クライアントが送ってきた価格は一切信用しない。
読み取り専用: 在庫の減算はこのサービスの責務ではない。
"""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StorageError, ValidationError


@dataclass(frozen=True)
class Product:
    product_id: str
    title: str
    price: Decimal
    vendor_id: str
    # None = 在庫管理なし (無制限)
    stock: int | None = None

    @property
    def stock_tracked(self) -> bool:
        return self.stock is not None


class ProductLookup:
    """products テーブルに対する読み取り専用の参照。"""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_product(self, product_id: str) -> Product | None:
        """商品を返す。存在しなければ None (NotFound)。"""
        if not product_id:
            raise ValidationError("Product id must not be empty")
        try:
            result = await self.session.execute(
                text("""
                    SELECT product_id, title, price, stock, vendor_id
                    FROM products
                    WHERE product_id = :id
                """),
                {"id": product_id},
            )
            row = result.fetchone()
        except SQLAlchemyError as e:
            raise StorageError("Failed to read product") from e
        if not row:
            return None
        return Product(
            product_id=row.product_id,
            title=row.title,
            price=Decimal(str(row.price)),
            vendor_id=row.vendor_id,
            stock=row.stock,
        )

    async def get_products(self, product_ids: list[str]) -> dict[str, Product | None]:
        """重複を除いた各商品を一度ずつ読む。"""
        found: dict[str, Product | None] = {}
        for product_id in product_ids:
            if product_id not in found:
                found[product_id] = await self.get_product(product_id)
        return found
