"""
Order Service — 設定

環境変数から読み込む。DATABASE_URL だけは必須。
"""

import os

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
IDENTITY_SERVICE_URL = os.environ.get("IDENTITY_SERVICE_URL", "http://localhost:8001")

# 楽観的トランザクションの再実行上限（ストア側の競合プロトコル）
TRANSACTION_MAX_ATTEMPTS = int(os.environ.get("TRANSACTION_MAX_ATTEMPTS", "5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
