"""
Shared — キューメッセージ定義

コレオグラフィのワイヤ契約。共有ストリームに流れる JSON は
`message` フィールドで種類を判別するタグ付きユニオン:

    {"message": "order.created",     "data": {"orderId": ..., "productIds": [...]}}
    {"message": "inventory.checked", "data": {"orderId": ..., "isAvailable": true}}
    {"message": "payment.processed", "data": {"orderId": ..., "status": "success"}}

受信側は宣言された形に合わないメッセージをディスパッチ前に弾く。
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

PaymentStatus = Literal["success", "failed"]


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class OrderCreatedData(_Payload):
    order_id: str = Field(alias="orderId", min_length=1)
    product_ids: list[str] = Field(alias="productIds", min_length=1)


class InventoryCheckedData(_Payload):
    order_id: str = Field(alias="orderId", min_length=1)
    is_available: bool = Field(alias="isAvailable")


class PaymentProcessedData(_Payload):
    order_id: str = Field(alias="orderId", min_length=1)
    status: PaymentStatus


class OrderCreated(_Payload):
    """注文が作成された"""
    message: Literal["order.created"] = "order.created"
    data: OrderCreatedData

    @classmethod
    def build(cls, order_id: str, product_ids: list[str]) -> "OrderCreated":
        return cls(data=OrderCreatedData(order_id=order_id, product_ids=product_ids))


class InventoryChecked(_Payload):
    """在庫確認が終わった（isAvailable=false なら注文はキャンセル）"""
    message: Literal["inventory.checked"] = "inventory.checked"
    data: InventoryCheckedData

    @classmethod
    def build(cls, order_id: str, is_available: bool) -> "InventoryChecked":
        return cls(data=InventoryCheckedData(order_id=order_id, is_available=is_available))


class PaymentProcessed(_Payload):
    """決済が処理された"""
    message: Literal["payment.processed"] = "payment.processed"
    data: PaymentProcessedData

    @classmethod
    def build(cls, order_id: str, status: PaymentStatus) -> "PaymentProcessed":
        return cls(data=PaymentProcessedData(order_id=order_id, status=status))


QueueMessage = Annotated[
    Union[OrderCreated, InventoryChecked, PaymentProcessed],
    Field(discriminator="message"),
]

_queue_message = TypeAdapter(QueueMessage)


class MalformedMessage(ValueError):
    """デコードできない、またはスキーマに合わないメッセージ"""


def encode(message: OrderCreated | InventoryChecked | PaymentProcessed) -> str:
    return message.model_dump_json(by_alias=True)


def decode(raw: str | bytes) -> OrderCreated | InventoryChecked | PaymentProcessed:
    try:
        return _queue_message.validate_json(raw)
    except ValidationError as e:
        raise MalformedMessage(str(e)) from e
