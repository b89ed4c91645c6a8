"""
Order Service — 認可ポリシー

操作ごとに「許可するか」と「そのアクターが追加で指定できるフィールド」を返す。
状態遷移ロジックにロール判定を散らばらせないために、判定はここに集約する。

    admin  : 任意の遷移
    seller : 自分の注文に対する前進遷移とキャンセル
    buyer  : 自分の注文のキャンセルのみ
"""

from dataclasses import dataclass, field

from .errors import Forbidden
from .identity import Actor

FULFILLMENT_FIELDS = frozenset({"tracking_number", "tracking_provider", "proof_of_delivery", "notes"})


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""
    permitted_fields: frozenset[str] = field(default_factory=frozenset)

    def enforce(self) -> "Decision":
        if not self.allowed:
            raise Forbidden(self.reason)
        return self


def _deny(reason: str) -> Decision:
    return Decision(False, f"Unauthorized: {reason}")


def authorize_status_request(actor: Actor, requested: str) -> Decision:
    """注文を読む前に判定できるロールだけのチェック。"""
    if actor.role == "buyer" and requested != "cancelled":
        return _deny("buyers can only cancel orders")
    return Decision(True)


def authorize_status_update(actor: Actor, order: dict, requested: str) -> Decision:
    if actor.is_admin:
        return Decision(True, permitted_fields=FULFILLMENT_FIELDS)
    if actor.role == "seller" and order["seller_id"] == actor.user_id:
        return Decision(True, permitted_fields=FULFILLMENT_FIELDS)
    if order["buyer_id"] == actor.user_id:
        if requested != "cancelled":
            return _deny("buyers can only cancel orders")
        return Decision(True, permitted_fields=frozenset({"notes"}))
    return _deny("you can only update your own orders")


def authorize_payment_confirmation(actor: Actor, order: dict) -> Decision:
    if order["buyer_id"] != actor.user_id:
        return _deny("you can only confirm payment for your own orders")
    return Decision(True)


def authorize_escrow_release(actor: Actor) -> Decision:
    if not actor.is_admin:
        return _deny("only admins can manually release escrow")
    return Decision(True)


def authorize_log_access(actor: Actor) -> Decision:
    if not actor.is_admin:
        return _deny("only admins can view order audit logs")
    return Decision(True)


def authorize_order_view(actor: Actor, order: dict) -> Decision:
    if actor.is_admin or actor.user_id in (order["buyer_id"], order["seller_id"]):
        return Decision(True)
    return _deny("you can only view your own orders")
