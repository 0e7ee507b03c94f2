"""
Order Service — イベントストア

注文の状態変更はすべてイベントとして追記する。集約はこれをリプレイして復元する。

楽観的ロック:
  追記するイベントのバージョンは expected_version + 1。
  (aggregate_id, version) の UNIQUE 制約に当たったら、誰かが先に書いている。
  version 1 での衝突は「同じ order_id の注文が既にある」ことを意味する。
"""

import json

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

AGGREGATE_TYPE = "Order"


class VersionConflict(Exception):
    def __init__(self, aggregate_id: str, version: int) -> None:
        self.aggregate_id = aggregate_id
        self.version = version
        super().__init__(f"{aggregate_id}: version {version} already exists")


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    event: BaseModel,
    expected_version: int,
) -> int:
    """
    イベントを追記して新しいバージョンを返す。commit は呼び出し側で行う。

    衝突した場合はトランザクションをロールバックして VersionConflict を送出する。
    """
    payload = event.model_dump(mode="json")
    new_version = expected_version + 1
    try:
        await session.execute(
            text("""
                INSERT INTO event_store
                    (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
                VALUES
                    (:agg_id, :agg_type, :evt_type, :evt_data, :version, :created_at)
            """),
            {
                "agg_id": aggregate_id,
                "agg_type": AGGREGATE_TYPE,
                "evt_type": type(event).__name__,
                "evt_data": json.dumps(payload),
                "version": new_version,
                "created_at": payload["timestamp"],
            },
        )
    except IntegrityError:
        await session.rollback()
        raise VersionConflict(aggregate_id, new_version)
    return new_version


def _to_dict(row) -> dict:
    data = row.event_data
    return {
        "sequence": row.id,
        "aggregate_id": row.aggregate_id,
        "event_type": row.event_type,
        "event_data": json.loads(data) if isinstance(data, str) else data,
        "version": row.version,
        "created_at": row.created_at,
    }


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """集約のイベントをバージョン順に返す。"""
    result = await session.execute(
        text("""
            SELECT id, aggregate_id, event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version
        """),
        {"agg_id": aggregate_id},
    )
    return [_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession, after: int = 0) -> list[dict]:
    """
    全イベントを追記順に返す（監査用）。

    after に前回読んだ sequence を渡すと、それより後のイベントだけを返す。
    """
    result = await session.execute(
        text("""
            SELECT id, aggregate_id, event_type, event_data, version, created_at
            FROM event_store
            WHERE id > :after
            ORDER BY id
        """),
        {"after": after},
    )
    return [_to_dict(row) for row in result.fetchall()]
