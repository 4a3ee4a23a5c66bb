"""
Order Service — 価格計算と検証 (Pricing & Validation Engine)

1. 商品をすべて参照 (1件でも無ければカート全体を拒否)
2. 在庫を確認 (同じ商品が複数行ある場合は合計数量で判定)
3. 現在の価格・名称・出品者をスナップショットして明細を作る
4. 合計は Decimal で正確に足し、最後に一度だけ 2 桁に丸める

同じ product_id の行はマージせず、リクエスト順の別々の明細として残す。
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal

from .errors import InsufficientStock, ProductNotFound, ValidationError
from .products import ProductLookup

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class RequestedItem:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class OrderLineItem:
    product_id: str
    title: str
    unit_price: Decimal
    quantity: int
    line_subtotal: Decimal
    vendor_id: str

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "line_subtotal": str(self.line_subtotal),
            "vendor_id": self.vendor_id,
        }


@dataclass(frozen=True)
class ValidatedOrder:
    items: tuple[OrderLineItem, ...]
    total_amount: Decimal


def _check_items(items: list[RequestedItem]) -> None:
    if not items:
        raise ValidationError("Order must contain at least one item")
    for item in items:
        # bool は int のサブクラスなので明示的に除外する
        if (
            not item.product_id
            or isinstance(item.quantity, bool)
            or not isinstance(item.quantity, int)
            or item.quantity <= 0
        ):
            raise ValidationError(
                "Invalid item in order", product_id=item.product_id or None
            )


async def validate_and_price(
    lookup: ProductLookup,
    items: list[RequestedItem],
) -> ValidatedOrder:
    _check_items(items)

    products = await lookup.get_products([item.product_id for item in items])

    requested: dict[str, int] = {}
    for item in items:
        product = products[item.product_id]
        if product is None:
            raise ProductNotFound(item.product_id)
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
        if product.stock_tracked and requested[item.product_id] > product.stock:
            raise InsufficientStock(
                item.product_id, requested[item.product_id], product.stock
            )

    lines = []
    total = Decimal("0")
    for item in items:
        product = products[item.product_id]
        subtotal = product.price * item.quantity
        total += subtotal
        lines.append(
            OrderLineItem(
                product_id=product.product_id,
                title=product.title,
                unit_price=product.price,
                quantity=item.quantity,
                line_subtotal=subtotal,
                vendor_id=product.vendor_id,
            )
        )

    return ValidatedOrder(
        items=tuple(lines),
        total_amount=total.quantize(CENTS, rounding=ROUND_HALF_EVEN),
    )
