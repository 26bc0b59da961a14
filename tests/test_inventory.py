import asyncio
import time

import pytest
from sqlalchemy import text

from tikiti.auth import Caller
from tikiti.errors import (
    AuthorizationError, InventoryExhausted, NotFoundError, ValidationError,
)
from tikiti.model import catalog
from tikiti.model.inventory import get_available_tickets
from tikiti.model.orders import OrderItem, create_order

from .factories import ADMIN_CALLER, BUYER, category_form, place_order, \
    seed_event


async def _count(db, table):
    async with db.session.begin():
        return (await db.session.execute(
            text(f"SELECT COUNT(*) FROM {table}")
        )).scalar_one()


async def test_availability_counts_reservations(db):
    event_id, category_id = await seed_event(db, quantity=5)
    await place_order(db, BUYER, category_id, 2)

    [cat] = await get_available_tickets(db, event_id)
    assert cat["ticket_category_id"] == category_id
    assert cat["quantity"] == 5
    assert cat["reserved"] == 2
    assert cat["sold"] == 0
    assert cat["available"] == 3
    assert cat["price"] == "1000.00"
    assert cat["is_available_now"] is True


async def test_availability_unknown_event(db):
    with pytest.raises(NotFoundError):
        await get_available_tickets(db, 404)


async def test_order_reserves_one_ticket_per_unit(db):
    _, category_id = await seed_event(db)
    order = await place_order(db, BUYER, category_id, 3)
    assert order["status"] == "pending"
    assert order["total"] == "3000.00"
    assert order["order_number"].startswith("ORD-")
    assert [t["status"] for t in order["tickets"]] == ["reserved"] * 3


async def test_concurrent_buyers_never_oversell(db, db_factory):
    event_id, category_id = await seed_event(db, quantity=3)

    async def attempt(i):
        async with db_factory() as s:
            return await create_order(
                s, Caller(f"user-{i}"), [OrderItem(category_id, 1)],
                total="1000.00",
            )

    results = await asyncio.gather(*(attempt(i) for i in range(8)),
                                   return_exceptions=True)
    won = [r for r in results if isinstance(r, dict)]
    lost = [r for r in results if isinstance(r, InventoryExhausted)]
    assert len(won) == 3
    assert len(lost) == 5
    assert all(e.remaining == 0 for e in lost)

    [cat] = await get_available_tickets(db, event_id)
    assert cat["reserved"] == 3
    assert cat["available"] == 0


async def test_exhausted_order_writes_nothing(db):
    event_id, category_id = await seed_event(db, quantity=2)
    with pytest.raises(InventoryExhausted) as e:
        await place_order(db, BUYER, category_id, 3)
    assert e.value.remaining == 2
    assert await _count(db, "orders") == 0
    assert await _count(db, "tickets") == 0


async def test_multi_item_order_is_all_or_nothing(db):
    event_id, regular = await seed_event(db, quantity=5)
    vip = (await catalog.create_ticket_category(
        db, ADMIN_CALLER,
        category_form(event_id, name="VIP", price="5000.00", quantity=1,
                      is_vip=True),
    ))["ticket_category_id"]

    with pytest.raises(InventoryExhausted):
        await create_order(db, BUYER,
                           [OrderItem(regular, 2), OrderItem(vip, 2)],
                           total="12000.00")
    for cat in await get_available_tickets(db, event_id):
        assert cat["reserved"] == 0
    assert await _count(db, "tickets") == 0


async def test_max_per_order(db):
    _, category_id = await seed_event(db, max_per_order=2)
    with pytest.raises(ValidationError) as e:
        await place_order(db, BUYER, category_id, 3)
    assert e.value.message == "Maximum 2 tickets per order"


async def test_sales_window(db):
    now = time.time()
    _, category_id = await seed_event(db, available_from=now + 3600,
                                      available_to=now + 7200)
    with pytest.raises(ValidationError) as e:
        await place_order(db, BUYER, category_id)
    assert "not open" in e.value.message


async def test_total_must_match_items(db):
    _, category_id = await seed_event(db)
    with pytest.raises(ValidationError) as e:
        await create_order(db, BUYER, [OrderItem(category_id, 2)],
                           total="1000.00")
    assert "does not match" in e.value.message
    assert await _count(db, "tickets") == 0


async def test_stale_price_is_rejected(db):
    _, category_id = await seed_event(db)
    with pytest.raises(ValidationError):
        await create_order(db, BUYER,
                           [OrderItem(category_id, 1, price="900.00")],
                           total="900.00")


@pytest.mark.parametrize("qty", [0, -1])
async def test_quantity_must_be_positive(db, qty):
    _, category_id = await seed_event(db)
    with pytest.raises(ValidationError):
        await create_order(db, BUYER, [OrderItem(category_id, qty)],
                           total="0")


async def test_order_requires_caller(db):
    _, category_id = await seed_event(db)
    with pytest.raises(AuthorizationError):
        await create_order(db, None, [OrderItem(category_id, 1)],
                           total="1000.00")
