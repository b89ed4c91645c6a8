"""
Order Service — イベント定義

トランザクションはドメインイベントのリストを生成し、
コミット後に audit.dispatch がそれを監査ログと Redis に書き出す。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field


class OrderEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[str]

    order_id: str
    actor_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_message(self, timestamp: str) -> dict:
        """Redis に発行するメッセージ形式"""
        return {
            "event_type": self.event_type,
            "data": {
                "order_id": self.order_id,
                "actor_id": self.actor_id,
                "metadata": self.metadata,
                "timestamp": timestamp,
            },
        }


class OrderCreated(OrderEvent):
    """注文が作成された（在庫引き当て済み）"""
    event_type: ClassVar[str] = "order_created"


class StatusUpdated(OrderEvent):
    """注文ステータスが変更された"""
    event_type: ClassVar[str] = "status_updated"


class TrackingNumberAdded(OrderEvent):
    event_type: ClassVar[str] = "tracking_number_added"


class DeliveryProofSubmitted(OrderEvent):
    event_type: ClassVar[str] = "delivery_proof_submitted"


class OrderRefunded(OrderEvent):
    """支払済み注文がキャンセルされ返金扱いになった"""
    event_type: ClassVar[str] = "order_refunded"


class PaymentConfirmed(OrderEvent):
    event_type: ClassVar[str] = "payment_confirmed"


class EscrowReleased(OrderEvent):
    """エスクロー資金が販売者に解放された（自動または管理者による手動）"""
    event_type: ClassVar[str] = "escrow_released"
