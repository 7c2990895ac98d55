# tests/api/_payloads.py
from __future__ import annotations

# 2 × 450 + 1 × 100 + 49 配送 + 5 平台费 = 1054
ORDER_BODY = {
    "vendor_id": "vendor-1",
    "items": [
        {"product_id": "p1", "name": "Engraved mug", "quantity": 2, "unit_price": "450"},
        {"product_id": "p2", "name": "Greeting card", "quantity": 1, "unit_price": "100"},
    ],
    "delivery_fee": "49",
    "delivery_address": {
        "name": "Asha",
        "phone": "9999999999",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "pincode": "560001",
    },
    "delivery_type": "local",
}
