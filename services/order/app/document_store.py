"""
Order Service — トランザクショナル・ドキュメントストア

products / orders / chats をドキュメント(JSON)として保存し、
複数ドキュメントにまたがる原子的な「読み取り → 書き込み」トランザクションを提供する。

楽観的ロック:
  読み取りフェーズで各ドキュメントの version を記録し、
  書き込みフェーズで UPDATE ... WHERE version = :expected を発行する。
  1 件も更新されなければ、読み取り後に他のトランザクションが
  コミットしたということ → 書き込みフェーズ全体をロールバックする。

  ┌──────────────┐    ┌────────────────┐    ┌──────────────┐
  │ 読み取り      │───▶│ fn(txn) で検証  │───▶│ 書き込み      │
  │ (version 記録)│    │ 書き込みを予約   │    │ (version 検証)│
  └──────────────┘    └────────────────┘    └──────┬───────┘
                                                   │ 競合
                                                   ▼
                                          新しいスナップショットで再実行
"""

import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import TRANSACTION_MAX_ATTEMPTS
from .errors import TransactionFailure
from .schema import DOCUMENT_COLLECTIONS, INDEXED_FIELDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

# deadlock_detected / serialization_failure
RETRYABLE_SQLSTATES = frozenset({"40P01", "40001"})


class ConcurrencyConflict(Exception):
    """読み取ったドキュメントがコミット前に他のトランザクションに変更された"""


def _is_retryable(error: DBAPIError) -> bool:
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in RETRYABLE_SQLSTATES


def new_id() -> str:
    return str(uuid4())


def server_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_collection(collection: str) -> None:
    # テーブル名は SQL に埋め込むので固定の集合に限定する
    if collection not in DOCUMENT_COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")


def _to_document(row) -> dict:
    data = json.loads(row.data) if isinstance(row.data, str) else dict(row.data)
    data["id"] = row.id
    return data


def _dump(data: dict) -> str:
    body = {k: v for k, v in data.items() if k != "id"}
    return json.dumps(body, default=str)


def _indexed(collection: str, data: dict) -> dict:
    return {field: data.get(field) for field in INDEXED_FIELDS[collection]}


def _insert_sql(collection: str) -> str:
    columns = ["id", *INDEXED_FIELDS[collection], "data", "version"]
    values = [f":{c}" for c in columns[:-1]] + ["1"]
    return f"INSERT INTO {collection} ({', '.join(columns)}) VALUES ({', '.join(values)})"


class Transaction:
    """
    1 回分のトランザクション試行。

    get() で読み、set() / update() で書き込みを予約する。
    予約した書き込みは run_transaction がまとめてコミットする。
    すべての読み取りはすべての書き込みより前でなければならない。
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._snapshots: dict[tuple[str, str], dict | None] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._writes: list[tuple[str, str, str, dict]] = []
        # このトランザクションで付与するサーバー時刻
        self.now = server_timestamp()

    async def get(self, collection: str, doc_id: str) -> dict | None:
        _check_collection(collection)
        if self._writes:
            raise RuntimeError("All reads must precede writes in a transaction")
        result = await self._session.execute(
            text(f"SELECT id, data, version FROM {collection} WHERE id = :id"),
            {"id": doc_id},
        )
        row = result.first()
        key = (collection, doc_id)
        if not row:
            self._snapshots[key] = None
            self._versions[key] = 0
            return None
        doc = _to_document(row)
        self._snapshots[key] = doc
        self._versions[key] = row.version
        return dict(doc)

    async def get_all(self, collection: str, doc_ids: list[str]) -> list[dict | None]:
        return [await self.get(collection, doc_id) for doc_id in doc_ids]

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        """新規ドキュメントを作成する。同じ id が既にあれば競合になる。"""
        _check_collection(collection)
        data = {**data, "created_at": self.now, "updated_at": self.now}
        self._writes.append(("insert", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        """読み取り済みのドキュメントの一部フィールドを更新する。"""
        key = (collection, doc_id)
        if self._snapshots.get(key) is None:
            raise RuntimeError(f"{collection}/{doc_id} must be read before it is updated")
        self._writes.append(("update", collection, doc_id, dict(fields)))

    def _stamp(self, previous: str | None) -> str:
        # updated_at は書き込みごとに単調増加させる
        if previous and previous > self.now:
            return previous
        return self.now

    async def _execute(self, statement: str, params: dict):
        try:
            return await self._session.execute(text(statement), params)
        except DBAPIError as e:
            if _is_retryable(e):
                raise ConcurrencyConflict(f"Write aborted by the database: {e.orig}") from e
            raise

    async def commit(self) -> None:
        """
        予約した書き込みを version 付きで実行する（呼び出し側がトランザクションを開く）。

        行ロックの取得順をトランザクション間で揃えるため、
        書き込みは (collection, id) 順に発行する。
        """
        for op, collection, doc_id, payload in sorted(self._writes, key=lambda w: (w[1], w[2])):
            key = (collection, doc_id)
            if op == "insert":
                try:
                    await self._execute(
                        _insert_sql(collection),
                        {"id": doc_id, "data": _dump(payload), **_indexed(collection, payload)},
                    )
                except IntegrityError as e:
                    raise ConcurrencyConflict(f"{collection}/{doc_id} already exists") from e
                self._snapshots[key] = {**payload, "id": doc_id}
                self._versions[key] = 1
                continue

            current = self._snapshots[key]
            merged = {**current, **payload}
            merged["updated_at"] = self._stamp(current.get("updated_at"))
            expected = self._versions[key]
            indexed = _indexed(collection, merged)
            assignments = "".join(f", {field} = :{field}" for field in indexed)
            result = await self._execute(
                f"""
                    UPDATE {collection}
                    SET data = :data, version = :new_version{assignments}
                    WHERE id = :id AND version = :expected
                """,
                {
                    "id": doc_id,
                    "data": _dump(merged),
                    "new_version": expected + 1,
                    "expected": expected,
                    **indexed,
                },
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(
                    f"{collection}/{doc_id} changed since version {expected}"
                )
            self._snapshots[key] = merged
            self._versions[key] = expected + 1


async def run_transaction(
    session: AsyncSession,
    fn: Callable[[Transaction], Awaitable[T]],
    max_attempts: int = TRANSACTION_MAX_ATTEMPTS,
) -> T:
    """
    fn(txn) を読み取りフェーズとして実行し、予約された書き込みを原子的にコミットする。

    fn が例外を投げた場合は何も書き込まずにそのまま伝播する。
    version 競合の場合は新しいスナップショットで fn を再実行し、
    max_attempts 回失敗したら TransactionFailure にする。
    """
    for attempt in range(1, max_attempts + 1):
        txn = Transaction(session)
        try:
            result = await fn(txn)
        finally:
            # 読み取りフェーズを閉じる
            await session.rollback()

        try:
            async with session.begin():
                await txn.commit()
        except ConcurrencyConflict as e:
            logger.warning("Transaction conflict (attempt %d/%d): %s", attempt, max_attempts, e)
            continue
        except DBAPIError as e:
            # COMMIT 時のシリアライズ失敗も競合として再実行する
            if not _is_retryable(e):
                raise
            logger.warning("Transaction conflict (attempt %d/%d): %s", attempt, max_attempts, e.orig)
            continue
        return result

    raise TransactionFailure(
        f"Transaction aborted after {max_attempts} conflicting attempts"
    )


# ── トランザクション外のアクセス（参照・初期データ投入） ──


async def get_document(session: AsyncSession, collection: str, doc_id: str) -> dict | None:
    _check_collection(collection)
    result = await session.execute(
        text(f"SELECT id, data, version FROM {collection} WHERE id = :id"),
        {"id": doc_id},
    )
    row = result.first()
    return _to_document(row) if row else None


async def find_documents(
    session: AsyncSession,
    collection: str,
    order_by: str | None = None,
    descending: bool = False,
    **filters,
) -> list[dict]:
    """
    インデックス列が filters と一致するドキュメントを返す。

    絞り込みと並び替えはインデックス列に対してのみ行える。
    """
    _check_collection(collection)
    indexed = INDEXED_FIELDS[collection]
    for field in [*filters, *([order_by] if order_by else [])]:
        if field not in indexed:
            raise ValueError(f"{collection}.{field} is not an indexed field")

    sql = f"SELECT id, data, version FROM {collection}"
    if filters:
        sql += " WHERE " + " AND ".join(f"{field} = :{field}" for field in filters)
    if order_by:
        sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}, id"
    result = await session.execute(text(sql), filters)
    return [_to_document(row) for row in result.fetchall()]


async def insert_document(
    session: AsyncSession,
    collection: str,
    data: dict,
    doc_id: str | None = None,
) -> str:
    """単一ドキュメントを作成してコミットする。"""
    _check_collection(collection)
    doc_id = doc_id or new_id()
    now = server_timestamp()
    doc = {**data, "created_at": now, "updated_at": now}
    await session.execute(
        text(_insert_sql(collection)),
        {"id": doc_id, "data": _dump(doc), **_indexed(collection, doc)},
    )
    await session.commit()
    return doc_id
