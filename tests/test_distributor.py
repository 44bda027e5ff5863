import random
from decimal import Decimal

import pytest

from fiscalmatch.distributor import (
    DEFAULT_POLICY,
    DistributionPolicy,
    ReceiptItem,
    distribute,
    items_total,
    to_minor,
    verify_total,
)
from fiscalmatch.exceptions import DistributionMismatch, DistributionOverflow


def test_small_amount_is_single_item():
    items = distribute(Decimal('999.99'))
    assert items == [ReceiptItem(DEFAULT_POLICY.product_name, 99999)]


def test_threshold_is_single_item():
    assert len(distribute(Decimal('1000'))) == 1


def test_payment_example():
    items = distribute(Decimal('1450.50'), rng=random.Random(3))

    assert 2 <= len(items) <= 3
    assert items_total(items) == 145050
    assert all(item.price > 0 for item in items)


@pytest.mark.parametrize('seed', range(20))
def test_sampled_totals_add_up(seed):
    rng = random.Random(seed)
    for _ in range(50):
        total = Decimal(rng.randint(1, 100_000_000)) / 100
        items = distribute(total, rng=rng)

        assert items_total(items) == to_minor(total)
        assert all(item.price > 0 for item in items)
        assert verify_total(items, total) == to_minor(total)


def test_large_total_converges():
    items = distribute(Decimal('1000000.00'), rng=random.Random(7))
    assert items_total(items) == 100_000_000


def test_generated_prices_in_range():
    items = distribute(Decimal('9876.54'), rng=random.Random(11))
    # all but the last one are drawn and rounded to 10 UAH
    for item in items[:-1]:
        assert item.price % 1000 == 0
        assert 300_00 <= item.price <= 900_00
    assert items[-1].price <= 900_00


def test_half_hryvnia_remainder():
    items = distribute(Decimal('1200.50'), rng=random.Random(1))
    assert items_total(items) == 120050


def test_non_positive_total_rejected():
    with pytest.raises(ValueError):
        distribute(Decimal('0'))
    with pytest.raises(ValueError):
        distribute(Decimal('-10'))


def test_overflow_is_raised():
    policy = DistributionPolicy(price_buckets=((1.0, 10, 10),), max_iterations=5)
    with pytest.raises(DistributionOverflow):
        distribute(Decimal('5000'), rng=random.Random(1), policy=policy)


def test_verify_total_mismatch():
    items = [ReceiptItem('Item', 10000)]
    with pytest.raises(DistributionMismatch) as excinfo:
        verify_total(items, Decimal('150.00'))
    assert 'expected 150.00 UAH, got 100.00 UAH' in str(excinfo.value)
