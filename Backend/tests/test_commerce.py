"""
Unit tests for order pricing, order numbers, and the status transition map.
"""
import re
from decimal import Decimal

import pytest

from biggbuzz.commerce import (
    ALLOWED_TRANSITIONS,
    CartLine,
    adjust_stock,
    cart_summary,
    compute_order_totals,
    decode_variant,
    ensure_cart_stock,
    ensure_stock,
    ensure_transition,
    generate_order_number,
    quantities_by_product,
)
from biggbuzz.core.errors import ValidationError
from biggbuzz.models import CartItem, DeliveryMethod, OrderStatus, Product


def line(price: str, quantity: int, stock: int = 100) -> CartLine:
    product = Product(
        name="Item", price=Decimal(price), stock_quantity=stock, in_stock=stock > 0, is_active=True
    )
    return CartLine(item=CartItem(quantity=quantity), product=product)


class TestOrderTotals:
    def test_standard_delivery(self):
        totals = compute_order_totals([line("100.00", 2), line("20.00", 1)], DeliveryMethod.STANDARD)
        assert totals.subtotal == Decimal("220.00")
        assert totals.tax == Decimal("22.00")
        assert totals.delivery_fee == Decimal("25.00")
        assert totals.total == Decimal("267.00")

    def test_express_delivery(self):
        totals = compute_order_totals([line("100.00", 1)], DeliveryMethod.EXPRESS)
        assert totals.delivery_fee == Decimal("50.00")
        assert totals.total == Decimal("160.00")

    @pytest.mark.parametrize("method", [DeliveryMethod.PICKUP, DeliveryMethod.DRONE])
    def test_free_delivery_methods(self, method):
        totals = compute_order_totals([line("100.00", 1)], method)
        assert totals.delivery_fee == Decimal("0.00")
        assert totals.total == Decimal("110.00")

    def test_tax_rounds_to_cents(self):
        totals = compute_order_totals([line("0.05", 1)], DeliveryMethod.PICKUP)
        assert totals.tax == Decimal("0.01")

    def test_cart_summary_excludes_delivery(self):
        summary = cart_summary([line("100.00", 2), line("20.00", 1)])
        assert summary == {"itemCount": 3, "subtotal": 220.0, "tax": 22.0, "total": 242.0}

    def test_empty_cart_summary(self):
        assert cart_summary([]) == {"itemCount": 0, "subtotal": 0.0, "tax": 0.0, "total": 0.0}


class TestStockChecks:
    def test_enough_stock(self):
        ensure_stock(line("10.00", 1, stock=3).product, 3)

    def test_not_enough_stock(self):
        with pytest.raises(ValidationError) as exc:
            ensure_stock(line("10.00", 1, stock=3).product, 4)
        assert exc.value.code == "INSUFFICIENT_STOCK"
        assert exc.value.message == "Not enough stock available"

    def test_out_of_stock_product_unavailable(self):
        with pytest.raises(ValidationError) as exc:
            ensure_stock(line("10.00", 1, stock=0).product, 1)
        assert exc.value.code == "PRODUCT_UNAVAILABLE"

    def test_variant_lines_share_one_stock_count(self):
        product = Product(
            id="prod-1", name="Item", price=Decimal("10.00"), stock_quantity=5, in_stock=True, is_active=True
        )
        lines = [
            CartLine(item=CartItem(quantity=3, variant='{"size": "a"}'), product=product),
            CartLine(item=CartItem(quantity=3, variant='{"size": "b"}'), product=product),
        ]
        assert quantities_by_product(lines) == {"prod-1": 6}

        with pytest.raises(ValidationError) as exc:
            ensure_cart_stock(lines)
        assert exc.value.code == "INSUFFICIENT_STOCK"
        assert exc.value.details == {"productId": "prod-1", "available": 5}

    def test_cart_stock_within_limit(self):
        product = Product(
            id="prod-1", name="Item", price=Decimal("10.00"), stock_quantity=6, in_stock=True, is_active=True
        )
        ensure_cart_stock([
            CartLine(item=CartItem(quantity=3), product=product),
            CartLine(item=CartItem(quantity=3, variant='{"size": "b"}'), product=product),
        ])

    def test_adjust_stock_to_zero_marks_out_of_stock(self):
        product = line("10.00", 1, stock=2).product
        adjust_stock(product, -2)
        assert product.stock_quantity == 0
        assert product.in_stock is False

        adjust_stock(product, 3)
        assert product.stock_quantity == 3
        assert product.in_stock is True

    def test_adjust_stock_never_goes_negative(self):
        product = line("10.00", 1, stock=2).product
        with pytest.raises(ValidationError) as exc:
            adjust_stock(product, -3)
        assert exc.value.code == "INSUFFICIENT_STOCK"
        assert product.stock_quantity == 2
        assert product.in_stock is True


class TestTransitions:
    def test_forward_path_allowed(self):
        path = [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PROCESSING,
            OrderStatus.PACKED,
            OrderStatus.SHIPPED,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
            OrderStatus.REFUNDED,
        ]
        for current, target in zip(path, path[1:]):
            ensure_transition(current, target)

    def test_terminal_states(self):
        assert ALLOWED_TRANSITIONS[OrderStatus.CANCELLED] == set()
        assert ALLOWED_TRANSITIONS[OrderStatus.REFUNDED] == set()

    def test_cannot_cancel_after_packing(self):
        with pytest.raises(ValidationError) as exc:
            ensure_transition(OrderStatus.PACKED, OrderStatus.CANCELLED)
        assert exc.value.code == "INVALID_STATUS_TRANSITION"

    def test_cannot_skip_back(self):
        with pytest.raises(ValidationError):
            ensure_transition(OrderStatus.SHIPPED, OrderStatus.PENDING)


class TestHelpers:
    def test_order_number_format(self):
        number = generate_order_number()
        assert re.fullmatch(r"ORD-\d{13}-[A-Z0-9]{6}", number)
        assert generate_order_number() != number

    def test_decode_variant(self):
        assert decode_variant(None) is None
        assert decode_variant('{"size": "3.5g"}') == {"size": "3.5g"}
        assert decode_variant("not json") == "not json"
