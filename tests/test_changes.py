"""
Test suite for changes module

Tests the structural diff used for audit entries and the classification of
portfolio differences into fee, rate, invoice and status changes.
"""

from decimal import Decimal

from loan_pricing.changes import (
    Array, ChangeAction, FieldChange, Map, Scalar, SnapshotChanges, classify_changes, diff, to_node
)
from loan_pricing.fees import FeeCalculationType, FeeType
from loan_pricing.loans import Fee, LoanPricing, LoanStatus, PricingStatus

from conftest import make_loan


def flat_fee(fee_id, amount="100.00"):
    return Fee(id=fee_id, fee_config_id=f"CFG-{fee_id}", code=fee_id, name=f"Fee {fee_id}",
               fee_type=FeeType.CUSTOM, calculation_type=FeeCalculationType.FLAT,
               currency="USD", flat_amount=Decimal(amount), calculated_amount=Decimal(amount))


class TestToNode:
    """Test the tagged value tree"""

    def test_shapes(self):
        node = to_node({"a": [1, 2], "b": {"c": "x"}})
        assert isinstance(node, Map)
        assert node.entries["a"] == Array([Scalar(1), Scalar(2)])
        assert node.entries["b"] == Map({"c": Scalar("x")})

    def test_objects_with_to_dict_become_maps(self):
        node = to_node(LoanPricing())
        assert isinstance(node, Map)
        assert node.entries["day_count_convention"] == Scalar("actual/360")


class TestDiff:
    """Test field-level differences"""

    def test_identical_values_have_no_changes(self):
        loan = make_loan(("100.00", "200.00"))
        assert diff(loan.to_dict(), loan.to_dict()) == []
        assert diff(loan, loan.copy()) == []

    def test_single_scalar_change(self):
        assert diff({"a": 1}, {"a": 2}) == [FieldChange("a", 1, 2)]

    def test_nested_paths(self):
        changes = diff({"pricing": {"spread": "0.01", "base_rate": "0.05"}},
                       {"pricing": {"spread": "0.02", "base_rate": "0.05"}})
        assert changes == [FieldChange("pricing.spread", "0.01", "0.02")]

    def test_added_and_removed_keys(self):
        changes = diff({"a": 1, "b": 2}, {"a": 1, "c": 3})
        assert FieldChange("b", 2, None) in changes
        assert FieldChange("c", None, 3) in changes
        assert len(changes) == 2

    def test_bookkeeping_keys_ignored(self):
        old = {"a": 1, "updated_at": "2024-01-01", "updatedBy": "x", "_cache": 1}
        new = {"a": 1, "updated_at": "2024-02-01", "updatedBy": "y", "_cache": 2}
        assert diff(old, new) == []

    def test_arrays_compared_whole(self):
        changes = diff({"tags": [1, 2]}, {"tags": [1, 3]})
        assert changes == [FieldChange("tags", [1, 2], [1, 3])]

    def test_path_prefix(self):
        changes = diff({"amount": "1"}, {"amount": "2"}, path_prefix="invoice")
        assert changes == [FieldChange("invoice.amount", "1", "2")]

    def test_top_level_scalar(self):
        assert diff(1, 2) == [FieldChange("", 1, 2)]

    def test_decimal_equality_is_numeric(self):
        assert diff({"a": Decimal('1.0')}, {"a": Decimal('1.00')}) == []

    def test_scalar_type_is_part_of_equality(self):
        assert diff({"a": 1}, {"a": True}) == [FieldChange("a", 1, True)]
        assert diff({"a": 1}, {"a": 1.0}) == [FieldChange("a", 1, 1.0)]
        assert diff({"a": [0]}, {"a": [False]}) == [FieldChange("a", [0], [False])]
        assert diff({"a": None}, {"a": None}) == []


class TestClassifyChanges:
    """Test portfolio change classification"""

    def test_no_changes(self):
        loan = make_loan(fees=[flat_fee("A")])
        assert classify_changes([loan], [loan.copy()]).is_empty()

    def test_first_snapshot_counts_everything_as_added(self):
        loan = make_loan(("100.00", "200.00"), fees=[flat_fee("A")])
        changes = classify_changes([], [loan])
        assert [d.action for d in changes.fees] == [ChangeAction.ADDED]
        assert [d.action for d in changes.invoices] == [ChangeAction.ADDED, ChangeAction.ADDED]
        assert changes.rates == [] and changes.statuses == []

    def test_fee_added_deleted_and_modified(self):
        before = make_loan(fees=[flat_fee("A"), flat_fee("B")])
        after = before.copy()
        after.remove_fee("A")
        after.get_fee("B").calculated_amount = Decimal('150.00')
        after.add_fee(flat_fee("C"))

        changes = classify_changes([before], [after])
        actions = {d.fee_id: d for d in changes.fees}
        assert actions["A"].action == ChangeAction.DELETED
        assert actions["A"].old_amount == Decimal('100.00')
        assert actions["B"].action == ChangeAction.MODIFIED
        assert (actions["B"].old_amount, actions["B"].new_amount) == (Decimal('100.00'), Decimal('150.00'))
        assert actions["C"].action == ChangeAction.ADDED
        assert actions["C"].new_amount == Decimal('100.00')

    def test_invoice_moved_between_loans(self):
        source = make_loan(("100.00", "200.00"), loan_number="SRC")
        target = make_loan(("300.00",), loan_number="TGT")
        before = [source.copy(), target.copy()]

        moved = source.remove_invoice(source.invoices[0].id)
        target.add_invoice(moved)

        changes = classify_changes(before, [source, target])
        assert len(changes.invoices) == 1
        detail = changes.invoices[0]
        assert detail.action == ChangeAction.MOVED
        assert detail.invoice_id == moved.id
        assert (detail.source_loan_number, detail.target_loan_number) == ("SRC", "TGT")
        assert detail.loan_id is None

    def test_invoice_amount_modified(self):
        before = make_loan(("100.00",))
        after = before.copy()
        after.invoices[0].amount = Decimal('120.00')
        changes = classify_changes([before], [after])
        assert [d.action for d in changes.invoices] == [ChangeAction.MODIFIED]
        assert changes.invoices[0].amount == Decimal('120.00')

    def test_rate_and_status_changes(self):
        before = make_loan()
        after = before.copy()
        after.pricing.spread = Decimal('0.03')
        after.pricing.effective_rate = Decimal('0.0800')
        after.status = LoanStatus.APPROVED
        after.pricing_status = PricingStatus.LOCKED

        changes = classify_changes([before], [after])
        assert [(r.field, r.old_value, r.new_value) for r in changes.rates] == \
            [("spread", Decimal('0.02'), Decimal('0.03'))]
        assert changes.rates[0].new_effective_rate == Decimal('0.0800')
        assert {(s.field, s.old_value, s.new_value) for s in changes.statuses} == {
            ("status", "draft", "approved"), ("pricing_status", "pending", "locked")
        }
        assert changes.count == 3

    def test_round_trip_through_dict(self):
        before = make_loan(fees=[flat_fee("A")])
        after = before.copy()
        after.remove_fee("A")
        after.pricing.base_rate = Decimal('0.06')
        changes = classify_changes([before], [after])

        restored = SnapshotChanges.from_dict(changes.to_dict())
        assert restored == changes
