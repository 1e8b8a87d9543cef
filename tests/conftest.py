from __future__ import annotations

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from storefront.schema import cart_items, carts, create_schema, products
from tests.fakes import FakeGateway, FakeRedis


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def seed(session_factory):
    """Insert catalog rows and a cart. Returns a helper for extra rows."""

    async def _seed(
        product_rows: list[dict] | None = None,
        account_id: str | None = None,
        cart_products: list[str] | None = None,
    ) -> None:
        async with session_factory() as session:
            async with session.begin():
                if product_rows:
                    await session.execute(insert(products), product_rows)
                if account_id is not None:
                    result = await session.execute(
                        insert(carts).values(account_id=account_id).returning(carts.c.id)
                    )
                    cart_id = result.scalar_one()
                    if cart_products:
                        await session.execute(
                            insert(cart_items),
                            [
                                {"cart_id": cart_id, "product_id": pid, "quantity": 1}
                                for pid in cart_products
                            ],
                        )

    await _seed(
        product_rows=[
            {"id": "p-ebook", "name": "Python E-Book", "price": 100000, "is_active": True},
            {"id": "p-course", "name": "Video Course", "price": 250000, "is_active": True},
            {"id": "p-retired", "name": "Old Template", "price": 50000, "is_active": False},
        ],
        account_id="acct-1",
        cart_products=["p-ebook", "p-course"],
    )
    return _seed
