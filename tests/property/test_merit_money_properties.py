"""Property tests for exact Decimal merit arithmetic."""
from decimal import Decimal
from typing import List, Tuple

from hypothesis import given, settings
from hypothesis import strategies as st

from hr_sync.merit import (
    CENTS,
    GuidelineTable,
    MeritGuideline,
    build_proposal,
    check_budget,
    to_money,
)

TABLE = GuidelineTable(guidelines=[
    MeritGuideline(rating=1, raise_percentage=Decimal("0")),
    MeritGuideline(rating=2, raise_percentage=Decimal("1.25")),
    MeritGuideline(rating=3, raise_percentage=Decimal("2.5")),
    MeritGuideline(rating=4, raise_percentage=Decimal("3.75")),
    MeritGuideline(rating=5, raise_percentage=Decimal("6.333")),
])

salaries = st.integers(min_value=0, max_value=50_000_000).map(lambda c: Decimal(c) / 100)
employees = st.lists(
    st.tuples(salaries, st.integers(min_value=1, max_value=5)), min_size=0, max_size=400
)


class TestMeritArithmetic:
    """Hundreds of proposals sum exactly, with no float drift."""

    @given(rows=employees, budget_cents=st.integers(min_value=0, max_value=10**9))
    @settings(max_examples=100, deadline=None)
    def test_budget_sums_exactly(self, rows: List[Tuple[Decimal, int]], budget_cents: int) -> None:
        proposals = [
            build_proposal("MC1", f"E{i}", salary, rating, TABLE)
            for i, (salary, rating) in enumerate(rows)
        ]
        budget = Decimal(budget_cents) / 100
        check = check_budget(proposals, budget)

        expected = Decimal("0.00")
        for p in proposals:
            assert p.raise_amount == p.raise_amount.quantize(CENTS)
            assert p.new_salary == p.current_salary + p.raise_amount
            expected += p.raise_amount
        assert check.allocated_budget == expected
        assert check.variance == check.allocated_budget - check.total_budget
        assert check.within_budget == (check.variance <= 0)

    @given(cents=st.integers(min_value=-10**12, max_value=10**12))
    def test_to_money_is_idempotent(self, cents: int) -> None:
        amount = to_money(Decimal(cents) / 100)
        assert to_money(amount) == amount
        assert to_money(str(amount)) == amount
