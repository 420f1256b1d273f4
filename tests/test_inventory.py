from sqlalchemy import text

from fulfillment.inventory import commands, subscriber
from fulfillment.inventory.main import app
from fulfillment.shared.messages import InventoryChecked, OrderCreated, PaymentProcessed
from tests.support import DatabaseTestCase, FakeBus, client_for


class InventoryTestCase(DatabaseTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.add_user(balance=100)
        self.order_id = await self.add_order()

    async def reserve(self, product_ids, order_id=None):
        async with self.session_factory() as session:
            return await commands.check_and_reserve(session, order_id or self.order_id, product_ids)

    async def commit(self, order_id=None):
        async with self.session_factory() as session:
            return await commands.commit_stock(session, order_id or self.order_id)

    async def reserved(self, order_id=None) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT product_id, quantity FROM order_products WHERE order_id = :id"),
                {"id": order_id or self.order_id},
            )
            return {row.product_id: row.quantity for row in result.fetchall()}


class TestCheckAndReserve(InventoryTestCase):

    async def test_available_products_are_reserved(self):
        product = await self.add_product(price=1, stock=5)

        self.assertTrue(await self.reserve([product]))

        self.assertEqual(await self.reserved(), {product: 1})
        self.assertEqual(await self.stock_of(product), 5)

    async def test_out_of_stock_product_is_unavailable(self):
        product = await self.add_product(price=1, stock=0)

        self.assertFalse(await self.reserve([product]))

        self.assertEqual(await self.reserved(), {})

    async def test_repeated_ids_are_checked_as_quantity(self):
        product = await self.add_product(price=1, stock=2)

        self.assertFalse(await self.reserve([product, product, product]))
        self.assertTrue(await self.reserve([product, product]))

        self.assertEqual(await self.reserved(), {product: 2})

    async def test_any_missing_product_makes_order_unavailable(self):
        product = await self.add_product(price=1, stock=5)

        self.assertFalse(await self.reserve([product, "no-such-product"]))

        self.assertEqual(await self.reserved(), {})

    async def test_no_matching_products(self):
        with self.assertRaises(commands.ProductsNotFound):
            await self.reserve(["no-such-product"])

    async def test_unknown_order(self):
        product = await self.add_product(price=1, stock=5)

        with self.assertRaises(commands.OrderNotFound):
            await self.reserve([product], order_id="missing-order")

    async def test_reserving_twice_does_not_duplicate(self):
        product = await self.add_product(price=1, stock=5)

        await self.reserve([product])
        await self.reserve([product])

        self.assertEqual(await self.count("order_products"), 1)


class TestCommitStock(InventoryTestCase):

    async def test_decrements_reserved_quantity(self):
        first = await self.add_product(price=1, stock=5)
        second = await self.add_product(price=2, stock=5)
        await self.reserve([first, first, second])

        self.assertTrue(await self.commit())

        self.assertEqual(await self.stock_of(first), 3)
        self.assertEqual(await self.stock_of(second), 4)

    async def test_commit_happens_once_per_order(self):
        product = await self.add_product(price=1, stock=5)
        await self.reserve([product])

        self.assertTrue(await self.commit())
        self.assertFalse(await self.commit())

        self.assertEqual(await self.stock_of(product), 4)

    async def test_stock_never_goes_negative(self):
        product = await self.add_product(price=1, stock=2)
        orders = [await self.add_order() for _ in range(3)]
        for order_id in orders:
            self.assertTrue(await self.reserve([product], order_id=order_id))

        await self.commit(orders[0])
        await self.commit(orders[1])
        with self.assertRaises(commands.InsufficientStock):
            await self.commit(orders[2])

        self.assertEqual(await self.stock_of(product), 0)

    async def test_partial_shortage_rolls_back_whole_order(self):
        plenty = await self.add_product(price=1, stock=5)
        scarce = await self.add_product(price=1, stock=1)
        other = await self.add_order()
        await self.reserve([plenty, scarce])
        await self.reserve([scarce], order_id=other)
        await self.commit(other)

        with self.assertRaises(commands.InsufficientStock):
            await self.commit()

        self.assertEqual(await self.stock_of(plenty), 5)
        self.assertEqual(await self.stock_of(scarce), 0)
        self.assertIsNone(
            await self.scalar("SELECT stock_committed_at FROM orders WHERE id = :id", id=self.order_id)
        )


class TestInventorySubscriber(InventoryTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.bus = FakeBus()

    async def handle(self, message):
        await subscriber.handle_event(self.session_factory, self.bus, message)

    async def test_order_created_publishes_availability(self):
        product = await self.add_product(price=1, stock=1)

        await self.handle(OrderCreated.build(self.order_id, [product]))

        self.assertEqual(self.bus.published, [InventoryChecked.build(self.order_id, True)])
        self.assertEqual(await self.reserved(), {product: 1})

    async def test_unknown_products_publish_unavailable(self):
        await self.handle(OrderCreated.build(self.order_id, ["no-such-product"]))

        self.assertEqual(self.bus.published, [InventoryChecked.build(self.order_id, False)])

    async def test_successful_payment_commits_stock(self):
        product = await self.add_product(price=1, stock=3)
        await self.reserve([product])

        await self.handle(PaymentProcessed.build(self.order_id, "success"))

        self.assertEqual(await self.stock_of(product), 2)
        self.assertEqual(self.bus.published, [])

    async def test_failed_payment_leaves_stock(self):
        product = await self.add_product(price=1, stock=3)
        await self.reserve([product])

        await self.handle(PaymentProcessed.build(self.order_id, "failed"))

        self.assertEqual(await self.stock_of(product), 3)

    async def test_unrelated_messages_are_ignored(self):
        await self.handle(InventoryChecked.build(self.order_id, True))

        self.assertEqual(self.bus.published, [])

    async def test_unknown_order_is_dropped(self):
        await self.handle(OrderCreated.build("missing-order", ["p1"]))

        self.assertEqual(self.bus.published, [])


class TestInventoryHttp(InventoryTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        app.state.session_factory = self.session_factory
        self.client = client_for(app)
        self.addAsyncCleanup(self.client.aclose)

    async def check(self, body):
        return await self.client.request("GET", "/api/v1/inventory", json=body)

    async def test_check_reports_availability(self):
        product = await self.add_product(price=1, stock=1)

        response = await self.check({"orderId": self.order_id, "productIds": [product]})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"orderId": self.order_id, "isAvailable": True})

    async def test_check_requires_fields(self):
        for body in ({"productIds": ["p1"]}, {"orderId": self.order_id}, {"orderId": self.order_id, "productIds": []}):
            with self.subTest(body=body):
                response = await self.check(body)

                self.assertEqual(response.status_code, 400)
                self.assertIn("error", response.json())

    async def test_check_unknown_products(self):
        response = await self.check({"orderId": self.order_id, "productIds": ["no-such-product"]})

        self.assertEqual(response.status_code, 404)

    async def test_update_commits_stock(self):
        product = await self.add_product(price=1, stock=1)
        await self.reserve([product])

        response = await self.client.patch(f"/api/v1/inventory/update/{self.order_id}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(await self.stock_of(product), 0)

    async def test_update_unknown_order(self):
        response = await self.client.patch("/api/v1/inventory/update/missing-order")

        self.assertEqual(response.status_code, 404)

    async def test_update_with_insufficient_stock(self):
        product = await self.add_product(price=1, stock=1)
        await self.reserve([product])
        await self.execute("UPDATE products SET stock = 0 WHERE id = :id", id=product)

        response = await self.client.patch(f"/api/v1/inventory/update/{self.order_id}")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(await self.stock_of(product), 0)
