"""
Tests for recording, editing and deleting expenses.
"""
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import (
    ExpenseNotFound, InvalidParticipants, InvalidSplitTransition, LedgerWriteFailed,
    SplitAccessDenied, SplitMismatchError
)
from app.db.session import build_engine, build_session_factory, init_db
from app.models.expense import Expense, ExpenseSplit, ExpenseStatus, SplitPolicy, SplitStatus
from app.schemas.expense import (
    CustomSplit, EqualSplit, ExpenseFilters, ExpenseUpdate, NoSplit, PercentageSplit, SplitPayment
)
from app.services.budget_monitor import BudgetMonitor
from app.services.expense_ledger import ExpenseLedger
from app.services.trip_directory import SqlTripDirectory
from app.tests.helpers import (
    ALICE, BOB, CAROL, OUTSIDER, TRIP_ID, BrokenPublisher, FakeConverter, RecordingPublisher,
    make_expense, seed_trip
)


def split_amounts(expense):
    return {s.user_id: s.amount for s in expense.splits}


def test_post_expense_creates_splits(ledger, publisher):
    expense = ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)

    assert expense.id is not None
    assert expense.payer_id == ALICE
    assert expense.base_amount == Decimal("100.00")
    assert expense.exchange_rate == Decimal("1")
    assert split_amounts(expense) == {ALICE: Decimal("33.34"), BOB: Decimal("33.33"), CAROL: Decimal("33.33")}
    assert all(s.status == SplitStatus.PENDING for s in expense.splits)
    assert publisher.types() == ["expense_created"]
    assert publisher.events[0].payload["expense_id"] == expense.id


def test_post_expense_in_foreign_currency_freezes_rate(ledger, converter):
    expense = ledger.post_expense(
        TRIP_ID, make_expense(amount=Decimal("100.00"), currency="eur"), recorded_by=BOB
    )

    assert expense.currency == "EUR"
    assert expense.exchange_rate == Decimal("1.10")
    assert expense.base_amount == Decimal("110.00")
    assert sum(s.base_amount for s in expense.splits) == Decimal("110.00")
    assert ("EUR", "USD") in converter.calls


def test_post_expense_with_payer_and_none_policy(ledger):
    expense = ledger.post_expense(
        TRIP_ID, make_expense(payer_id=CAROL, split=NoSplit()), recorded_by=ALICE
    )
    assert expense.recorded_by == ALICE
    assert split_amounts(expense) == {CAROL: Decimal("100.00")}


def test_post_expense_rejects_non_members(ledger, session_factory):
    with pytest.raises(InvalidParticipants):
        ledger.post_expense(TRIP_ID, make_expense(participants=[ALICE, OUTSIDER]), recorded_by=ALICE)
    with pytest.raises(InvalidParticipants):
        ledger.post_expense(TRIP_ID, make_expense(payer_id=OUTSIDER), recorded_by=ALICE)
    with session_factory() as db:
        assert db.query(Expense).count() == 0


def test_post_expense_validates_split_before_writing(ledger, session_factory, publisher):
    bad = make_expense(split=CustomSplit(amounts={ALICE: Decimal("40"), BOB: Decimal("61")}), participants=[ALICE, BOB])
    with pytest.raises(SplitMismatchError):
        ledger.post_expense(TRIP_ID, bad, recorded_by=ALICE)
    with session_factory() as db:
        assert db.query(Expense).count() == 0
    assert publisher.events == []


def test_conversion_failure_rolls_back(ledger, budgets, converter, session_factory):
    budgets.set_budget(TRIP_ID, None, Decimal("1000"), "USD", created_by=ALICE)
    converter.fail = True

    with pytest.raises(LedgerWriteFailed) as exc_info:
        ledger.post_expense(TRIP_ID, make_expense(currency="EUR"), recorded_by=ALICE)

    assert exc_info.value.cause is not None
    with session_factory() as db:
        assert db.query(Expense).count() == 0
    assert budgets.get_budget(TRIP_ID).spent_amount == 0


def test_store_failure_after_insert_rolls_back(ledger, budgets, session_factory, publisher, monkeypatch):
    budgets.set_budget(TRIP_ID, None, Decimal("1000"), "USD", created_by=ALICE)

    def failing_apply_spend(*args, **kwargs):
        raise OperationalError("UPDATE budgets", {}, Exception("disk I/O error"))

    monkeypatch.setattr(budgets, "apply_spend", failing_apply_spend)

    with pytest.raises(LedgerWriteFailed):
        ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)

    with session_factory() as db:
        assert db.query(Expense).count() == 0
        assert db.query(ExpenseSplit).count() == 0
    assert publisher.events == []


def test_publisher_failure_does_not_undo_write(session_factory, directory, converter, budgets):
    ledger = ExpenseLedger(session_factory, directory, converter, budgets, BrokenPublisher())
    expense = ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)
    assert ledger.get_expense(expense.id).status == ExpenseStatus.ACTIVE


def test_post_updates_budgets_and_emits_alert(ledger, budgets, publisher):
    budgets.set_budget(TRIP_ID, None, Decimal("100"), "USD", created_by=ALICE)
    budgets.set_budget(TRIP_ID, "food", Decimal("1000"), "USD", created_by=ALICE)

    ledger.post_expense(TRIP_ID, make_expense(amount=Decimal("85.00")), recorded_by=ALICE)

    assert budgets.get_budget(TRIP_ID).spent_amount == Decimal("85.00")
    assert budgets.get_budget(TRIP_ID, "food").spent_amount == Decimal("85.00")
    assert publisher.types() == ["expense_created", "budget_alert"]
    assert publisher.events[1].payload["level"] == "warning"


def test_post_then_delete_restores_budget_and_balances(ledger, budgets, aggregator, publisher):
    budgets.set_budget(TRIP_ID, None, Decimal("1000"), "USD", created_by=ALICE)
    ledger.post_expense(TRIP_ID, make_expense(amount=Decimal("30.00")), recorded_by=BOB)
    before_spent = budgets.get_budget(TRIP_ID).spent_amount
    before_balances = aggregator.net_balances(TRIP_ID)

    expense = ledger.post_expense(TRIP_ID, make_expense(amount=Decimal("77.77")), recorded_by=ALICE)
    ledger.delete_expense(expense.id)

    assert budgets.get_budget(TRIP_ID).spent_amount == before_spent
    assert aggregator.net_balances(TRIP_ID) == before_balances
    assert publisher.types()[-1] == "expense_deleted"
    with pytest.raises(ExpenseNotFound):
        ledger.get_expense(expense.id)


def test_delete_missing_expense(ledger):
    with pytest.raises(ExpenseNotFound):
        ledger.delete_expense(4040)


def test_update_amount_keeps_frozen_rate_and_resplits(ledger, budgets, converter):
    budgets.set_budget(TRIP_ID, None, Decimal("1000"), "USD", created_by=ALICE)
    expense = ledger.post_expense(TRIP_ID, make_expense(currency="EUR"), recorded_by=ALICE)
    converter.rates[("EUR", "USD")] = Decimal("2.00")

    updated = ledger.update_expense(expense.id, ExpenseUpdate(amount=Decimal("50.00")))

    assert updated.exchange_rate == Decimal("1.10")
    assert updated.base_amount == Decimal("55.00")
    assert split_amounts(updated) == {ALICE: Decimal("16.68"), BOB: Decimal("16.66"), CAROL: Decimal("16.66")}
    assert sum(s.base_amount for s in updated.splits) == Decimal("55.00")
    assert budgets.get_budget(TRIP_ID).spent_amount == Decimal("55.00")


def test_update_currency_refreezes_rate(ledger, converter):
    expense = ledger.post_expense(TRIP_ID, make_expense(currency="USD"), recorded_by=ALICE)

    updated = ledger.update_expense(expense.id, ExpenseUpdate(currency="EUR"))

    assert updated.exchange_rate == Decimal("1.10")
    assert updated.base_amount == Decimal("110.00")


def test_base_amounts_follow_stored_rate(ledger, converter):
    converter.rates[("EUR", "USD")] = Decimal("1.000000006")

    expense = ledger.post_expense(TRIP_ID, make_expense(
        amount=Decimal("500000.00"), currency="EUR", split=NoSplit()
    ), recorded_by=ALICE)

    # 500000.00 * 1.00000001 = 500000.005, not the unrounded 500000.003
    assert expense.exchange_rate == Decimal("1.00000001")
    assert expense.base_amount == Decimal("500000.01")
    assert [s.base_amount for s in expense.splits] == [Decimal("500000.01")]

    small = ledger.post_expense(TRIP_ID, make_expense(
        amount=Decimal("100.00"), currency="EUR", split=NoSplit()
    ), recorded_by=ALICE)
    updated = ledger.update_expense(small.id, ExpenseUpdate(amount=Decimal("500000.00")))
    assert updated.exchange_rate == Decimal("1.00000001")
    assert updated.base_amount == Decimal("500000.01")


def test_update_split_replaces_rows_as_pending(ledger):
    expense = ledger.post_expense(TRIP_ID, make_expense(amount=Decimal("90.00")), recorded_by=ALICE)
    ledger.acknowledge_split(expense.splits[1].id, BOB)

    updated = ledger.update_expense(expense.id, ExpenseUpdate(
        participants=[ALICE, BOB],
        split=PercentageSplit(percentages={ALICE: Decimal("60"), BOB: Decimal("40")})
    ))

    assert split_amounts(updated) == {ALICE: Decimal("54.00"), BOB: Decimal("36.00")}
    assert all(s.status == SplitStatus.PENDING for s in updated.splits)
    assert ledger.get_expense(expense.id).split_params == {"percentages": {"1": "60", "2": "40"}}


def test_update_to_equal_split_resplits_evenly(ledger):
    expense = ledger.post_expense(TRIP_ID, make_expense(
        amount=Decimal("90.00"),
        split=PercentageSplit(percentages={ALICE: Decimal("50"), BOB: Decimal("25"), CAROL: Decimal("25")})
    ), recorded_by=ALICE)

    updated = ledger.update_expense(expense.id, ExpenseUpdate(split=EqualSplit()))

    assert updated.split_policy == SplitPolicy.EQUAL
    assert split_amounts(updated) == {ALICE: Decimal("30.00"), BOB: Decimal("30.00"), CAROL: Decimal("30.00")}


def test_update_category_moves_spend(ledger, budgets):
    budgets.set_budget(TRIP_ID, None, Decimal("1000"), "USD", created_by=ALICE)
    budgets.set_budget(TRIP_ID, "food", Decimal("500"), "USD", created_by=ALICE)
    budgets.set_budget(TRIP_ID, "transport", Decimal("500"), "USD", created_by=ALICE)
    expense = ledger.post_expense(TRIP_ID, make_expense(amount=Decimal("40.00")), recorded_by=ALICE)

    ledger.update_expense(expense.id, ExpenseUpdate(category="transport", amount=Decimal("45.00")))

    assert budgets.get_budget(TRIP_ID).spent_amount == Decimal("45.00")
    assert budgets.get_budget(TRIP_ID, "food").spent_amount == 0
    assert budgets.get_budget(TRIP_ID, "transport").spent_amount == Decimal("45.00")


def test_cancel_and_reactivate_expense(ledger, budgets, aggregator):
    budgets.set_budget(TRIP_ID, None, Decimal("1000"), "USD", created_by=ALICE)
    expense = ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)

    cancelled = ledger.update_expense(expense.id, ExpenseUpdate(status=ExpenseStatus.CANCELLED))
    assert all(s.status == SplitStatus.CANCELLED for s in cancelled.splits)
    assert budgets.get_budget(TRIP_ID).spent_amount == 0
    assert set(aggregator.net_balances(TRIP_ID).values()) == {Decimal(0)}

    reactivated = ledger.update_expense(expense.id, ExpenseUpdate(status=ExpenseStatus.ACTIVE))
    assert all(s.status == SplitStatus.PENDING for s in reactivated.splits)
    assert budgets.get_budget(TRIP_ID).spent_amount == Decimal("100.00")
    assert aggregator.net_balances(TRIP_ID)[ALICE] == Decimal("66.66")


def test_update_rejects_non_member_participants(ledger):
    expense = ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)
    with pytest.raises(InvalidParticipants):
        ledger.update_expense(expense.id, ExpenseUpdate(participants=[ALICE, OUTSIDER]))
    assert len(ledger.get_expense(expense.id).splits) == 3


def test_update_plain_fields_keeps_splits(ledger, publisher):
    expense = ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)
    split_ids = [s.id for s in expense.splits]

    updated = ledger.update_expense(expense.id, ExpenseUpdate(title="Late dinner", notes="Tip included"))

    assert updated.title == "Late dinner"
    assert [s.id for s in updated.splits] == split_ids
    assert publisher.events[-1].payload["changed"] == ["notes", "title"]


def test_split_transitions(ledger, publisher):
    expense = ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)
    bob_split = next(s for s in expense.splits if s.user_id == BOB)

    with pytest.raises(SplitAccessDenied):
        ledger.acknowledge_split(bob_split.id, CAROL)

    assert ledger.acknowledge_split(bob_split.id, BOB).status == SplitStatus.ACKNOWLEDGED
    paid = ledger.mark_split_paid(
        bob_split.id, ALICE, SplitPayment(payment_method="cash", payment_reference="r-1")
    )
    assert paid.status == SplitStatus.PAID
    assert paid.payment_method == "cash"
    assert paid.paid_at is not None
    assert publisher.types()[-1] == "split_updated"

    with pytest.raises(InvalidSplitTransition):
        ledger.acknowledge_split(bob_split.id, BOB)


def test_list_expenses_filters_and_pagination(ledger):
    ledger.post_expense(TRIP_ID, make_expense(title="Taxi", amount=Decimal("20.00"), category="transport",
                                              tags=["airport"]), recorded_by=ALICE)
    ledger.post_expense(TRIP_ID, make_expense(title="Lunch", amount=Decimal("45.00"),
                                              participants=[BOB, CAROL], payer_id=BOB), recorded_by=BOB)
    ledger.post_expense(TRIP_ID, make_expense(title="Hotel", amount=Decimal("300.00"), category="lodging",
                                              tags=["airport", "night"]), recorded_by=CAROL)

    expenses, total = ledger.list_expenses(TRIP_ID, ExpenseFilters(sort_by="amount_desc"))
    assert total == 3
    assert [e.title for e in expenses] == ["Hotel", "Lunch", "Taxi"]

    expenses, total = ledger.list_expenses(TRIP_ID, ExpenseFilters(sort_by="amount_asc", limit=2, offset=1))
    assert total == 3
    assert [e.title for e in expenses] == ["Lunch", "Hotel"]

    expenses, _ = ledger.list_expenses(TRIP_ID, ExpenseFilters(payer_id=BOB))
    assert [e.title for e in expenses] == ["Lunch"]

    expenses, _ = ledger.list_expenses(TRIP_ID, ExpenseFilters(participant_id=ALICE, sort_by="amount_asc"))
    assert [e.title for e in expenses] == ["Taxi", "Hotel"]

    expenses, total = ledger.list_expenses(TRIP_ID, ExpenseFilters(tags=["night"]))
    assert total == 1 and expenses[0].title == "Hotel"


def test_list_splits(ledger):
    ledger.post_expense(TRIP_ID, make_expense(), recorded_by=ALICE)
    ledger.post_expense(TRIP_ID, make_expense(participants=[BOB, CAROL]), recorded_by=BOB)

    assert len(ledger.list_splits(TRIP_ID)) == 5
    assert [s.amount for s in ledger.list_splits(TRIP_ID, user_id=CAROL)] == [Decimal("33.33"), Decimal("50.00")]


def test_expense_summary(ledger):
    ledger.post_expense(TRIP_ID, make_expense(amount=Decimal("90.00")), recorded_by=ALICE)
    ledger.post_expense(TRIP_ID, make_expense(amount=Decimal("30.00"), category="transport"), recorded_by=BOB)

    summary = ledger.expense_summary(TRIP_ID)

    assert summary.total_expenses == 2
    assert summary.total_amount == Decimal("120.00")
    assert summary.currency == "USD"
    assert [(c.category, c.amount) for c in summary.category_breakdown] == [
        ("food", Decimal("90.00")), ("transport", Decimal("30.00"))
    ]
    alice = next(u for u in summary.user_breakdown if u.user_id == ALICE)
    assert alice.paid == Decimal("90.00")
    assert alice.owes == Decimal("40.00")
    assert alice.balance == Decimal("50.00")


@pytest.fixture
def file_ledger(tmp_path):
    """Ledger on a file database, so each thread gets its own connection."""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}", echo=False)
    init_db(engine)
    session_factory = build_session_factory(engine)
    seed_trip(session_factory)
    directory = SqlTripDirectory(session_factory)
    converter = FakeConverter()
    budgets = BudgetMonitor(session_factory, directory, converter)
    ledger = ExpenseLedger(session_factory, directory, converter, budgets, RecordingPublisher())
    yield ledger, budgets
    engine.dispose()


def test_concurrent_posts_do_not_lose_budget_updates(file_ledger):
    ledger, budgets = file_ledger
    budgets.set_budget(TRIP_ID, None, Decimal("10000"), "USD", created_by=ALICE)
    budgets.set_budget(TRIP_ID, "food", Decimal("10000"), "USD", created_by=ALICE)

    amounts = [Decimal("10.00") + i for i in range(16)]

    def post(amount):
        return ledger.post_expense(TRIP_ID, make_expense(amount=amount), recorded_by=ALICE)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(post, amounts))

    assert len(results) == len(amounts)
    assert budgets.get_budget(TRIP_ID).spent_amount == sum(amounts)
    assert budgets.get_budget(TRIP_ID, "food").spent_amount == sum(amounts)


def test_budget_created_during_concurrent_posts_counts_each_expense_once(file_ledger):
    ledger, budgets = file_ledger
    amounts = [Decimal("10.00") + i for i in range(16)]

    def post(amount):
        return ledger.post_expense(TRIP_ID, make_expense(amount=amount), recorded_by=ALICE)

    with ThreadPoolExecutor(max_workers=8) as pool:
        posts = [pool.submit(post, amount) for amount in amounts[:8]]
        budget = pool.submit(budgets.set_budget, TRIP_ID, "food", Decimal("10000"), "USD", ALICE)
        posts.extend(pool.submit(post, amount) for amount in amounts[8:])
        for future in posts:
            future.result()
        budget.result()

    assert budgets.get_budget(TRIP_ID, "food").spent_amount == sum(amounts)
