"""
Order Service — テーブル定義

products / orders / chats はドキュメントとして JSON で保存する。
version 列が楽観的ロックのためのバージョン番号。
検索に使うフィールドは INDEXED_FIELDS として data と同じ値を列にも持つ。
order_logs は追記専用の監査ログ。seq は挿入順。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DOCUMENT_COLLECTIONS = ("products", "orders", "chats")

# コレクション → 列として複製するフィールド
INDEXED_FIELDS = {
    "products": (),
    "orders": ("buyer_id", "seller_id", "created_at"),
    "chats": (),
}

# 自動採番の書き方だけが方言ごとに違う
_SEQ_COLUMN = {
    "sqlite": "seq INTEGER PRIMARY KEY AUTOINCREMENT",
}
_DEFAULT_SEQ_COLUMN = "seq BIGSERIAL PRIMARY KEY"


def _document_ddl(name: str) -> list[str]:
    columns = "".join(f"{field} VARCHAR(64),\n            " for field in INDEXED_FIELDS[name])
    ddl = [
        f"""
        CREATE TABLE IF NOT EXISTS {name} (
            id VARCHAR(64) PRIMARY KEY,
            {columns}data TEXT NOT NULL,
            version INTEGER NOT NULL
        )
        """
    ]
    ddl += [
        f"CREATE INDEX IF NOT EXISTS ix_{name}_{field} ON {name} ({field})"
        for field in INDEXED_FIELDS[name]
    ]
    return ddl


def _order_logs_ddl(dialect: str) -> list[str]:
    seq = _SEQ_COLUMN.get(dialect, _DEFAULT_SEQ_COLUMN)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS order_logs (
            {seq},
            id VARCHAR(64) NOT NULL UNIQUE,
            order_id VARCHAR(64) NOT NULL,
            event_type VARCHAR(64) NOT NULL,
            actor_id VARCHAR(64) NOT NULL,
            metadata TEXT NOT NULL,
            timestamp VARCHAR(40)
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_order_logs_order_id ON order_logs (order_id)",
    ]


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルがなければ作成する（起動時に呼ぶ）。"""
    ddl = [stmt for name in DOCUMENT_COLLECTIONS for stmt in _document_ddl(name)]
    ddl += _order_logs_ddl(engine.dialect.name)
    async with engine.begin() as conn:
        for stmt in ddl:
            await conn.execute(text(stmt))
