import json
import unittest

from fulfillment.shared import messages
from fulfillment.shared.messages import (
    InventoryChecked,
    MalformedMessage,
    OrderCreated,
    PaymentProcessed,
)


class TestQueueMessages(unittest.TestCase):

    def test_decode_dispatches_on_message_field(self):
        raw = json.dumps({"message": "inventory.checked", "data": {"orderId": "o1", "isAvailable": False}})

        decoded = messages.decode(raw)

        self.assertIsInstance(decoded, InventoryChecked)
        self.assertEqual(decoded.data.order_id, "o1")
        self.assertFalse(decoded.data.is_available)

    def test_encode_uses_wire_field_names(self):
        body = json.loads(messages.encode(OrderCreated.build("o1", ["p1", "p1"])))

        self.assertEqual(
            body, {"message": "order.created", "data": {"orderId": "o1", "productIds": ["p1", "p1"]}}
        )

    def test_decode_accepts_bytes(self):
        raw = messages.encode(PaymentProcessed.build("o1", "failed")).encode()

        self.assertEqual(messages.decode(raw), PaymentProcessed.build("o1", "failed"))

    def test_undecodable_json_is_malformed(self):
        with self.assertRaises(MalformedMessage):
            messages.decode("{not json")

    def test_unknown_message_kind_is_malformed(self):
        with self.assertRaises(MalformedMessage):
            messages.decode(json.dumps({"message": "order.shipped", "data": {"orderId": "o1"}}))

    def test_shape_violations_are_malformed(self):
        bad_payloads = [
            {"message": "order.created", "data": {"orderId": "o1"}},
            {"message": "order.created", "data": {"orderId": "o1", "productIds": []}},
            {"message": "payment.processed", "data": {"orderId": "o1", "status": "pending"}},
            {"message": "inventory.checked", "data": {"isAvailable": True}},
        ]
        for payload in bad_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(MalformedMessage):
                    messages.decode(json.dumps(payload))
