"""
Order Service — イベント定義

注文確定後に Redis Pub/Sub (order_events チャネル) へ発行するイベント。
通知メールや出品者への連絡など、購読側の処理はベストエフォート。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreatedLine(BaseModel):
    product_id: str
    vendor_id: str
    quantity: int
    line_subtotal: str


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: str
    user_id: str
    user_email: str | None
    items: list[OrderCreatedLine]
    total_amount: str
    timestamp: datetime
