"""
カタログ価格オラクル — 読み取り専用

商品IDの集合から、現在の価格と購入可否を1回のクエリでまとめて引く。
下流で使う価格は必ずここから来る。クライアントが送った価格は信用しない。
"""

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import products


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    price: int
    purchasable: bool


async def lookup_prices(
    session: AsyncSession,
    product_ids: Iterable[str],
) -> dict[str, CatalogEntry]:
    """
    結果に含まれない ID は「購入不可」として扱う。
    副作用なし。
    """
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(products.c.id, products.c.name, products.c.price, products.c.is_active)
        .where(products.c.id.in_(ids))
    )
    return {
        str(row.id): CatalogEntry(
            id=str(row.id),
            name=row.name,
            price=int(row.price),
            purchasable=bool(row.is_active),
        )
        for row in result.fetchall()
    }
