"""
Order Service — エラー定義

すべてのエラーは機械判定用の category と人間向けの detail を持つ。
HTTP 層は category と status_code をそのままレスポンスに変換する。
"""


class OrderError(Exception):
    category = "internal_error"
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"error": self.category, "detail": self.detail}


class ValidationError(OrderError):
    """入力の欠落・不正（ストアにはアクセスしない）"""
    category = "validation_error"
    status_code = 400


class AuthenticationError(OrderError):
    category = "authentication_error"
    status_code = 401


class Forbidden(OrderError):
    """ロール・所有者の不一致、または状態的に許されない操作"""
    category = "forbidden"
    status_code = 403


class NotFound(OrderError):
    category = "not_found"
    status_code = 404


class Conflict(OrderError):
    """業務ルール違反（不正な状態遷移、支払済み、エスクロー解放済みなど）"""
    category = "conflict"
    status_code = 409


class InsufficientStock(Conflict):
    category = "insufficient_stock"


class Unavailable(Conflict):
    category = "unavailable"


class TransactionFailure(OrderError):
    """ストアのコミット失敗（参照ドキュメントの消失、解消できない競合）"""
    category = "transaction_failure"
    status_code = 500
