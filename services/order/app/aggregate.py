"""
Order Service — 注文集約 (Order Aggregate)

注文ドキュメントを読み込み、状態遷移ルールを検証しながら変更を積み上げる。
変更 (changes) とドメインイベント (events) はトランザクションの
コミット時にまとめて書き出される。

状態遷移:
    pending → confirmed → shipped → delivered
    pending / confirmed → cancelled  (未払い)
    pending / confirmed → refunded   (支払済みをキャンセル = 返金)

refunded は直接要求できない。支払済み注文のキャンセルの結果としてのみ到達する。
"""

from .errors import Conflict, ValidationError
from .events import (
    DeliveryProofSubmitted,
    EscrowReleased,
    OrderCreated,
    OrderEvent,
    OrderRefunded,
    PaymentConfirmed,
    StatusUpdated,
    TrackingNumberAdded,
)

VALID_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_METHODS = ("COD", "KBZPay", "WavePay")
DEFAULT_TRACKING_PROVIDER = "local_courier"
SYSTEM_ACTOR = "system"

TERMINAL_STATUSES = frozenset({"cancelled", "refunded"})
CANCELLABLE_STATUSES = frozenset({"pending", "confirmed"})

# 要求されたステータス → 遷移元として許される現在のステータス
ALLOWED_SOURCES = {
    "confirmed": frozenset({"pending", "confirmed"}),
    "shipped": frozenset({"pending", "confirmed", "shipped"}),
    "delivered": frozenset({"pending", "confirmed", "shipped"}),
    "cancelled": CANCELLABLE_STATUSES,
}

PROOF_FIELDS = ("photo_url", "otp_code", "signature_url", "delivery_notes")
STRONG_PROOF_FIELDS = ("photo_url", "otp_code", "signature_url")


def clean_proof(proof: dict | None) -> dict:
    """配達証明から既知かつ空でないフィールドだけを残す。"""
    cleaned = {}
    for field in PROOF_FIELDS:
        value = (proof or {}).get(field)
        if isinstance(value, str):
            value = value.strip()
        if value:
            cleaned[field] = value
    return cleaned


def validate_status_request(
    requested: str,
    tracking_number: str | None = None,
    proof_of_delivery: dict | None = None,
) -> None:
    """注文を読まなくても判定できる入力チェック。ストアに触れる前に呼ぶ。"""
    if requested not in VALID_STATUSES:
        raise ValidationError(f"Invalid order status: {requested}")
    if requested == "shipped":
        if tracking_number is None:
            raise ValidationError("Tracking number is required when shipping an order")
        if not tracking_number.strip():
            raise ValidationError("Invalid tracking number: must not be empty")
    if requested == "delivered":
        if proof_of_delivery is None:
            raise ValidationError("Proof of delivery is required to mark an order delivered")
        if not clean_proof(proof_of_delivery):
            raise ValidationError(
                "Invalid proof of delivery: provide a photo, OTP code, signature or delivery notes"
            )


class OrderAggregate:
    """
    注文集約 — 1 トランザクション分の変更を保持する。

    doc は読み取り時点のスナップショット、changes はこれから書き込むフィールド。
    プロパティは常に「スナップショット + 変更」を返す。
    """

    def __init__(self, doc: dict, now: str) -> None:
        self.doc = doc
        self.now = now
        self.changes: dict = {}
        self.events: list[OrderEvent] = []

    def _get(self, field: str, default=None):
        if field in self.changes:
            return self.changes[field]
        return self.doc.get(field, default)

    @property
    def id(self) -> str:
        return self.doc["id"]

    @property
    def status(self) -> str:
        return self._get("status")

    @property
    def payment_status(self) -> str:
        return self._get("payment_status")

    @property
    def payment_method(self) -> str:
        return self._get("payment_method")

    @property
    def escrow_released(self) -> bool:
        return bool(self._get("escrow_released", False))

    @property
    def products(self) -> list[dict]:
        return self.doc.get("products", [])

    @property
    def total_amount(self) -> float:
        return self.doc.get("total_amount", 0)

    @property
    def seller_id(self) -> str:
        return self.doc["seller_id"]

    # ── 作成 ─────────────────────────────────────

    @classmethod
    def create(
        cls,
        order_id: str,
        buyer_id: str,
        seller_id: str,
        lines: list[dict],
        payment_method: str,
        delivery_address: dict,
        chat_id: str | None,
        now: str,
    ) -> "OrderAggregate":
        """引き当て済みの明細スナップショットから新しい注文を組み立てる。"""
        total_amount = sum(line["price"] * line["quantity"] for line in lines)
        order_source = "chat" if chat_id else "direct"
        doc = {
            "id": order_id,
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "products": lines,
            "total_amount": total_amount,
            "payment_method": payment_method,
            "payment_status": "pending",
            "payment_confirmation": None,
            "status": "pending",
            "order_source": order_source,
            "chat_id": chat_id,
            "delivery_address": {
                "street": delivery_address["street"],
                "city": delivery_address["city"],
                "phone": delivery_address["phone"],
                "notes": delivery_address.get("notes") or "",
            },
            "escrow_released": False,
        }
        agg = cls(doc, now)
        agg.events.append(OrderCreated(
            order_id=order_id,
            actor_id=buyer_id,
            metadata={
                "seller_id": seller_id,
                "total_amount": total_amount,
                "payment_method": payment_method,
                "product_count": len(lines),
                "order_source": order_source,
                "chat_id": chat_id,
            },
        ))
        return agg

    # ── ステータス遷移 ───────────────────────────

    def transition(
        self,
        actor_id: str,
        requested: str,
        tracking_number: str | None = None,
        tracking_provider: str | None = None,
        proof_of_delivery: dict | None = None,
        notes: str | None = None,
    ) -> str:
        """
        要求されたステータスへ遷移し、最終ステータスを返す。

        キャンセル要求でも支払済みなら最終ステータスは refunded になる。
        """
        validate_status_request(requested, tracking_number, proof_of_delivery)
        old_status = self.status
        if requested == "refunded":
            raise Conflict(
                "Cannot set refunded status directly: it is set automatically "
                "when cancelling a paid order"
            )
        if old_status in TERMINAL_STATUSES:
            raise Conflict("Order is already cancelled or refunded")
        if requested == "cancelled" and old_status not in CANCELLABLE_STATUSES:
            raise Conflict(
                f"Cannot cancel a {old_status} order: only pending or confirmed "
                "orders can be cancelled"
            )
        if old_status not in ALLOWED_SOURCES.get(requested, frozenset()):
            raise Conflict(f"Invalid status transition: {old_status} -> {requested}")

        if requested == "confirmed":
            self.changes["status"] = "confirmed"
        elif requested == "shipped":
            self._ship(actor_id, tracking_number, tracking_provider)
        elif requested == "delivered":
            self._deliver(actor_id, proof_of_delivery)
        elif requested == "cancelled":
            self._cancel(actor_id)

        # 監査イベントは status_updated を先頭にする
        self.events.insert(0, StatusUpdated(
            order_id=self.id,
            actor_id=actor_id,
            metadata={
                "old_status": old_status,
                "new_status": self.status,
                "requested_status": requested,
                "notes": notes,
            },
        ))
        return self.status

    def _ship(self, actor_id: str, tracking_number: str, tracking_provider: str | None) -> None:
        tracking_number = tracking_number.strip()
        provider = (tracking_provider or "").strip() or DEFAULT_TRACKING_PROVIDER
        self.changes.update({
            "status": "shipped",
            "tracking_number": tracking_number,
            "tracking_provider": provider,
        })
        # 再出荷は追跡番号の訂正として扱い、最初の出荷時刻は保持する
        if not self.doc.get("shipped_at"):
            self.changes["shipped_at"] = self.now
        self.events.append(TrackingNumberAdded(
            order_id=self.id,
            actor_id=actor_id,
            metadata={
                "tracking_number": tracking_number,
                "tracking_provider": provider,
                "previous_tracking_number": self.doc.get("tracking_number"),
            },
        ))

    def _deliver(self, actor_id: str, proof: dict) -> None:
        proof = clean_proof(proof)
        if self.payment_method == "COD" and not any(proof.get(f) for f in STRONG_PROOF_FIELDS):
            raise ValidationError(
                "COD orders require stronger proof of delivery: OTP code, photo or signature"
            )

        self.changes.update({
            "status": "delivered",
            "delivered_at": self.now,
            "proof_of_delivery": {
                **proof,
                "confirmed_by": actor_id,
                "confirmed_at": self.now,
            },
        })
        self.events.append(DeliveryProofSubmitted(
            order_id=self.id,
            actor_id=actor_id,
            metadata={"proof_types": sorted(proof), "payment_method": self.payment_method},
        ))

        # 代引きは配達完了をもって支払済みとする
        if self.payment_method == "COD" and self.payment_status == "pending":
            self.changes["payment_status"] = "paid"

        if self.payment_status == "paid" and not self.escrow_released:
            self.release_escrow(SYSTEM_ACTOR, triggered_by="delivery_confirmation")

    def _cancel(self, actor_id: str) -> None:
        self.changes["cancelled_at"] = self.now
        if self.payment_status == "paid":
            self.changes.update({
                "status": "refunded",
                "payment_status": "refunded",
                "refunded_at": self.now,
                "refunded_by": actor_id,
            })
            self.events.append(OrderRefunded(
                order_id=self.id,
                actor_id=actor_id,
                metadata={"amount": self.total_amount, "payment_method": self.payment_method},
            ))
        else:
            self.changes["status"] = "cancelled"

    # ── 支払い・エスクロー ───────────────────────

    def confirm_payment(self, actor_id: str, transaction_id: str, receipt_id: str) -> dict:
        if self.payment_method == "COD":
            raise Conflict("COD payment is confirmed on delivery, not through payment confirmation")
        if self.payment_status == "paid":
            raise Conflict("Order is already paid")
        if self.status in TERMINAL_STATUSES:
            raise Conflict(f"Cannot confirm payment for a {self.status} order")

        confirmation = {
            "transaction_id": transaction_id,
            "receipt_id": receipt_id,
            "paid_at": self.now,
        }
        self.changes.update({"payment_status": "paid", "payment_confirmation": confirmation})
        self.events.append(PaymentConfirmed(
            order_id=self.id,
            actor_id=actor_id,
            metadata={
                "payment_method": self.payment_method,
                "transaction_id": transaction_id,
                "amount": self.total_amount,
            },
        ))

        # 配達済みの後に支払いが確認された場合
        if self.status == "delivered" and not self.escrow_released:
            self.release_escrow(SYSTEM_ACTOR, triggered_by="payment_confirmation_after_delivery")
        return confirmation

    def release_escrow(self, released_by: str, triggered_by: str, manual: bool = False) -> None:
        if self.status in TERMINAL_STATUSES:
            raise Conflict(f"Cannot release escrow for a {self.status} order")
        if self.escrow_released:
            raise Conflict("Escrow already released for this order")

        self.changes.update({
            "escrow_released": True,
            "escrow_released_at": self.now,
            "escrow_released_by": released_by,
        })
        metadata = {
            "seller_id": self.seller_id,
            "amount": self.total_amount,
            "triggered_by": triggered_by,
        }
        if manual:
            metadata["manual"] = True
        else:
            metadata["automatic"] = True
        self.events.append(EscrowReleased(order_id=self.id, actor_id=released_by, metadata=metadata))
