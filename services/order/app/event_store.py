"""
Order Service — イベントストア

注文ごとのイベントを追記し、集約の再構築に使う。
バージョン番号による楽観的ロックで同時書き込みを防ぐ。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConcurrentModification
from .schema import event_store


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントをストアに追記する。

    expected_version で楽観的ロックを実現:
    同じ aggregate_id + version の組み合わせが既に存在すると
    UNIQUE 制約違反で失敗する → ConcurrentModification。
    呼び出し側はトランザクションをロールバックすること。
    """
    new_version = expected_version + 1
    try:
        await session.execute(
            insert(event_store).values(
                aggregate_id=aggregate_id,
                aggregate_type=aggregate_type,
                event_type=event_type,
                event_data=json.dumps(event_data, default=str),
                version=new_version,
                created_at=datetime.now(timezone.utc),
            )
        )
    except IntegrityError as exc:
        raise ConcurrentModification(aggregate_id) from exc
    return new_version


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """
    指定した集約の全イベントをバージョン順に読み出す。
    集約を再構築（リプレイ）するために使う。
    """
    result = await session.execute(
        select(
            event_store.c.event_type,
            event_store.c.event_data,
            event_store.c.version,
            event_store.c.created_at,
        )
        .where(event_store.c.aggregate_id == aggregate_id)
        .order_by(event_store.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data),
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.all()
    ]
