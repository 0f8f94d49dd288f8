"""
Tests para utilidades comunes

- Parseo y formato de montos/cantidades
- RequestCoordinator: latest-wins y cancelación
- Throttle compartido
- OptimisticCollection (placeholder -> lista del servidor)
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from till_engine.common.exceptions import ConflictAtCommit, StaleResponse, TillError, TransportError
from till_engine.common.optimistic import OptimisticCollection
from till_engine.common.requests import RequestCoordinator, Throttle
from till_engine.common.validators import (
    format_money, format_qty, is_valid_ymd, parse_amount, parse_ymd,
    quantize_quantity, round_money, to_json_number,
)


# ===== VALIDATORS =====

class TestParseAmount:
    """Montos escritos por el cajero o recibidos del API"""

    def test_plain_and_formatted_numbers(self):
        assert parse_amount("8000") == Decimal("8000")
        assert parse_amount("1,200.25 ") == Decimal("1200.25")
        assert parse_amount("RWF 4,000") == Decimal("4000")
        assert parse_amount(0.5) == Decimal("0.5")
        assert parse_amount(7) == Decimal("7")

    def test_invalid_values_use_fallback(self):
        assert parse_amount(None) == Decimal("0")
        assert parse_amount("") == Decimal("0")
        assert parse_amount("abc") == Decimal("0")
        assert parse_amount(float("nan")) == Decimal("0")
        assert parse_amount(True) == Decimal("0")
        assert parse_amount("x", fallback=Decimal("1")) == Decimal("1")


class TestRounding:
    def test_money_rounds_half_up(self):
        assert round_money(Decimal("2.5")) == Decimal("3")
        assert round_money(Decimal("1249.4")) == Decimal("1249")
        assert round_money(Decimal("-0.5")) == Decimal("-1")

    def test_quantity_keeps_three_places(self):
        assert quantize_quantity(Decimal("1.23456")) == Decimal("1.235")
        assert quantize_quantity(Decimal("2")) == Decimal("2.000")

    def test_json_numbers(self):
        assert to_json_number(Decimal("4.000")) == 4
        assert isinstance(to_json_number(Decimal("4.000")), int)
        assert to_json_number(Decimal("0.250")) == 0.25


class TestFormatting:
    def test_format_qty_strips_trailing_zeros(self):
        assert format_qty(Decimal("10")) == "10"
        assert format_qty(Decimal("1200.500")) == "1,200.5"
        assert format_qty("0.1234") == "0.123"

    def test_format_money(self):
        assert format_money(Decimal("12000.4")) == "12,000"


class TestDates:
    def test_ymd(self):
        assert is_valid_ymd("2026-03-10")
        assert not is_valid_ymd("2026-02-30")
        assert not is_valid_ymd("10/03/2026")
        assert parse_ymd("2026-03-10T12:00:00.000Z") == date(2026, 3, 10)
        assert parse_ymd("garbage") is None


# ===== EXCEPTIONS =====

class TestExceptions:
    def test_detail_is_message(self):
        error = TransportError("Failed to save sale. Status: 500", status_code=500)
        assert str(error) == "Failed to save sale. Status: 500"
        assert error.status_code == 500

    def test_conflict_is_transport_error(self):
        error = ConflictAtCommit("Stock changed")
        assert isinstance(error, TransportError)
        assert isinstance(error, TillError)
        assert error.status_code == 409

    def test_stale_response_is_not_a_user_error(self):
        assert not isinstance(StaleResponse("stock:1", 2), TillError)


# ===== REQUEST COORDINATOR =====

class TestRequestCoordinator:
    """Solo la última generación de cada recurso aplica su respuesta"""

    @pytest.mark.anyio
    async def test_single_request_returns_result(self):
        coordinator = RequestCoordinator()

        async def fetch():
            return "totals"

        assert await coordinator.run("system-totals:1", fetch) == "totals"
        assert coordinator.generation("system-totals:1") == 1

    @pytest.mark.anyio
    async def test_superseded_request_is_cancelled_and_discarded(self):
        coordinator = RequestCoordinator()
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "date D"

        async def fast():
            return "date D2"

        first = asyncio.ensure_future(coordinator.run("system-totals:1", slow))
        await asyncio.sleep(0)

        assert await coordinator.run("system-totals:1", fast) == "date D2"
        with pytest.raises(StaleResponse):
            await first

    @pytest.mark.anyio
    async def test_late_response_ignoring_cancellation_is_discarded(self):
        coordinator = RequestCoordinator()
        release = asyncio.Event()

        async def stubborn():
            try:
                await release.wait()
            except asyncio.CancelledError:
                await release.wait()
            return "date D"

        async def fast():
            return "date D2"

        first = asyncio.ensure_future(coordinator.run("system-totals:1", stubborn))
        await asyncio.sleep(0)
        assert await coordinator.run("system-totals:1", fast) == "date D2"

        release.set()
        with pytest.raises(StaleResponse):
            await first
        assert coordinator.generation("system-totals:1") == 2

    @pytest.mark.anyio
    async def test_resources_are_independent(self):
        coordinator = RequestCoordinator()
        release = asyncio.Event()

        async def slow_totals():
            await release.wait()
            return "totals"

        async def summary():
            return "summary"

        totals = asyncio.ensure_future(coordinator.run("system-totals:1", slow_totals))
        await asyncio.sleep(0)
        assert await coordinator.run("expense-summary:1", summary) == "summary"

        release.set()
        assert await totals == "totals"

    @pytest.mark.anyio
    async def test_current_failure_propagates(self):
        coordinator = RequestCoordinator()

        async def failing():
            raise TransportError("boom", status_code=500)

        with pytest.raises(TransportError):
            await coordinator.run("stock:1", failing)

    @pytest.mark.anyio
    async def test_invalidate_supersedes_in_flight(self):
        coordinator = RequestCoordinator()
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "sale"

        pending = asyncio.ensure_future(coordinator.run("sale-edit:1", slow))
        await asyncio.sleep(0)
        coordinator.invalidate("sale-edit:1")

        with pytest.raises(StaleResponse):
            await pending


# ===== THROTTLE =====

class TestThrottle:
    def test_blocks_within_window(self):
        now = [100.0]
        throttle = Throttle(1.5, clock=lambda: now[0])

        assert throttle.allow()
        now[0] += 0.5
        assert not throttle.allow()
        now[0] += 1.1
        assert throttle.allow()

    def test_force_records_tick(self):
        now = [0.0]
        throttle = Throttle(1.5, clock=lambda: now[0])

        throttle.force()
        assert not throttle.allow()
        assert throttle.allow(0)

    def test_custom_interval(self):
        now = [10.0]
        throttle = Throttle(1.5, clock=lambda: now[0])
        assert throttle.allow()
        now[0] += 1.2
        assert not throttle.allow()
        assert throttle.allow(1.0)


# ===== OPTIMISTIC COLLECTION =====

class TestOptimisticCollection:
    def test_placeholder_then_authoritative_replacement(self):
        collection = OptimisticCollection(["alice"])
        collection.add_placeholder("bob (pending)")

        assert collection.items == ["alice", "bob (pending)"]
        assert collection.has_pending

        collection.replace_all(["alice", "bob"])
        assert collection.items == ["alice", "bob"]
        assert not collection.has_pending

    def test_failed_create_discards_placeholder(self):
        collection = OptimisticCollection(["alice"])
        token = collection.add_placeholder("bob (pending)")
        collection.discard_placeholder(token)

        assert list(collection) == ["alice"]
        assert len(collection) == 1
