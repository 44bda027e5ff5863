"""
Checkbox receipt bodies.

Prices are kopecks, quantities use the API's fixed point (1000 = one piece).
"""

import logging
from decimal import Decimal

from thefuzz import fuzz

from fiscalmatch.distributor import ReceiptItem, items_total, to_major, to_minor

logger = logging.getLogger(__name__)

QUANTITY_SCALE = 1000

PRODUCT_VARIANTS = [
    'Кабель USB консольний',
    'Перехідник HDMI-RCA',
    'Кабель SCART',
    'Перехідник SCART',
    'Перехідник USB-RS232',
    'Кабель USB-RS232 1.5m',
    'Кабель USB-RS232 3 метри',
    'Перехідник HDMI-DP',
    'Кабель USB Type C',
    'Перехідник HDMI-VGA',
    'Термопаста, 2 гр.',
]


def item_code(index):
    return str(index + 1).zfill(4)


def build_goods(items):
    return [
        {
            "good": {
                "code": item_code(index),
                "name": item.name,
                "price": item.price,
            },
            "quantity": item.quantity * QUANTITY_SCALE,
            "is_return": False,
            "discounts": [],
        }
        for index, item in enumerate(items)
    ]


def build_sell_receipt(items):
    return {
        "goods": build_goods(items),
        "payments": [{"type": "CASHLESS", "value": items_total(items)}],
        "discounts": [],
    }


def build_waybill_receipt(items, ettn):
    return {
        "goods": build_goods(items),
        "payments": [{"type": "ETTN", "value": items_total(items), "ettn": ettn}],
        "discounts": [],
        "deliveries": [],
    }


def map_product_variant(title, variants=PRODUCT_VARIANTS):
    best_match = variants[0]
    best_score = -1
    for variant in variants:
        score = fuzz.ratio((title or '').lower(), variant.lower())
        if score > best_score:
            best_score = score
            best_match = variant
    logger.debug('Mapped "%s" to "%s" (score %s)', title, best_match, best_score)
    return best_match


def _line_item_price(line_item):
    if line_item.get('price') is not None:
        return Decimal(str(line_item['price']))
    amount = (((line_item.get('priceSet') or {}).get('shopMoney') or {}).get('amount'))
    return Decimal(str(amount or '0'))


def items_from_line_items(line_items):
    """Order line items (frontend or Shopify shaped) to receipt items."""
    items = []
    for line_item in line_items:
        name = line_item.get('variant') or map_product_variant(
            line_item.get('title') or line_item.get('name') or 'Unknown Product'
        )
        items.append(ReceiptItem(
            name=name,
            price=to_minor(_line_item_price(line_item)),
            quantity=int(line_item.get('quantity') or 1),
        ))
    return items


def preview_items(items):
    return [
        {
            "code": item_code(index),
            "name": item.name,
            "quantity": item.quantity,
            "priceUAH": float(item.price_uah),
            "priceKopecks": item.price,
            "totalUAH": float(item.total_uah),
            "totalKopecks": item.total,
        }
        for index, item in enumerate(items)
    ]


def receipt_total_uah(items):
    return to_major(items_total(items))
