import threading

import pytest

from tenderflow.award import SIBLING_REJECTION_REASON, AwardCoordinator
from tenderflow.db.connection import ConnectionState
from tenderflow.errors import AlreadyProcessed, ApiError, Forbidden, InvalidTransition, TransactionFailed
from tenderflow.lifecycle import TenderEvent
from tenderflow.models import BidStatus, TenderStatus


def _submit(engine, tender, vendor, amount):
    return engine.bid_service.submit_bid(tender.id, vendor, amount, f"offer from {vendor.user_id}")


@pytest.fixture
def three_bids(engine, open_tender, vendor_a, vendor_b, vendor_c):
    return (
        _submit(engine, open_tender, vendor_a, "120"),
        _submit(engine, open_tender, vendor_b, "180"),
        _submit(engine, open_tender, vendor_c, "240"),
    )


def test_award_requires_closed_tender(engine, open_tender, buyer, three_bids):
    winner = three_bids[0]
    with pytest.raises(InvalidTransition) as exc:
        engine.coordinator.award_bid(winner.id, buyer)
    assert exc.value.code == "TENDER_NOT_CLOSED"
    assert engine.bids.get(winner.id).status is BidStatus.PENDING

    engine.tender_service.close_tender(open_tender.id, buyer)
    outcome = engine.coordinator.settle(winner.id, buyer, TenderEvent.AWARD)

    assert outcome.bid.status is BidStatus.ACCEPTED
    assert outcome.bid.evaluated_by == buyer.user_id
    assert outcome.tender.status is TenderStatus.AWARDED
    assert sorted(b.id for b in outcome.rejected) == sorted(b.id for b in three_bids[1:])
    for sibling in three_bids[1:]:
        loaded = engine.bids.get(sibling.id)
        assert loaded.status is BidStatus.REJECTED
        assert loaded.rejection_reason == SIBLING_REJECTION_REASON
    assert engine.bids.count_accepted(open_tender.id) == 1
    assert engine.tenders.get(open_tender.id).status is TenderStatus.AWARDED


def test_accept_settles_an_open_tender(engine, open_tender, buyer, three_bids):
    accepted = engine.coordinator.accept_bid(three_bids[1].id, buyer, notes="best delivery time")

    assert accepted.status is BidStatus.ACCEPTED
    assert accepted.evaluation_notes == "best delivery time"
    assert engine.tenders.get(open_tender.id).status is TenderStatus.AWARDED
    statuses = {b.id: b.status for b in engine.bids.find_all()}
    assert list(statuses.values()).count(BidStatus.ACCEPTED) == 1


def test_award_writes_one_history_row_per_changed_bid(engine, open_tender, buyer, three_bids):
    engine.tender_service.close_tender(open_tender.id, buyer)
    engine.coordinator.award_bid(three_bids[0].id, buyer)

    winner_history = engine.history.list_for_bid(three_bids[0].id)
    assert [e.action for e in winner_history] == ["submitted", "awarded"]
    assert winner_history[-1].old_values["status"] == "pending"
    assert winner_history[-1].new_values["status"] == "accepted"
    assert winner_history[-1].notes == "Bid awarded"
    for sibling in three_bids[1:]:
        entries = engine.history.list_for_bid(sibling.id)
        assert [e.action for e in entries] == ["submitted", "rejected"]
        assert entries[-1].performed_by == buyer.user_id


def test_withdrawn_bids_are_not_touched_by_award(engine, open_tender, buyer, vendor_c, three_bids):
    withdrawn = engine.bid_service.withdraw_bid(three_bids[2].id, vendor_c, "capacity issue")
    assert withdrawn.status is BidStatus.WITHDRAWN

    engine.tender_service.close_tender(open_tender.id, buyer)
    outcome = engine.coordinator.award_bid(three_bids[0].id, buyer)

    assert outcome.status is BidStatus.ACCEPTED
    assert engine.bids.get(three_bids[2].id).status is BidStatus.WITHDRAWN
    assert engine.bids.get(three_bids[1].id).status is BidStatus.REJECTED
    assert [e.action for e in engine.history.list_for_bid(three_bids[2].id)] == ["submitted", "withdrawn"]


def test_terminal_bids_cannot_be_awarded_again(engine, open_tender, buyer, three_bids):
    engine.tender_service.close_tender(open_tender.id, buyer)
    engine.coordinator.award_bid(three_bids[0].id, buyer)

    with pytest.raises(AlreadyProcessed):
        engine.coordinator.award_bid(three_bids[0].id, buyer)
    with pytest.raises(AlreadyProcessed):
        engine.coordinator.award_bid(three_bids[1].id, buyer)
    assert engine.bids.count_accepted(open_tender.id) == 1


def test_failed_audit_write_rolls_back_every_change(engine, open_tender, buyer, three_bids, monkeypatch):
    engine.tender_service.close_tender(open_tender.id, buyer)

    def _broken_record(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(engine.history, "record", _broken_record)
    with pytest.raises(TransactionFailed):
        engine.coordinator.award_bid(three_bids[0].id, buyer)
    monkeypatch.undo()

    assert engine.tenders.get(open_tender.id).status is TenderStatus.CLOSED
    assert all(engine.bids.get(b.id).status is BidStatus.PENDING for b in three_bids)
    assert engine.bids.count_accepted(open_tender.id) == 0
    assert [e.action for e in engine.history.list_for_bid(three_bids[0].id)] == ["submitted"]

    # the same award succeeds once the audit store is back
    assert engine.coordinator.award_bid(three_bids[0].id, buyer).status is BidStatus.ACCEPTED


def test_only_owner_or_admin_may_award(engine, open_tender, buyer, other_buyer, admin, vendor_a, three_bids):
    engine.tender_service.close_tender(open_tender.id, buyer)
    with pytest.raises(Forbidden):
        engine.coordinator.award_bid(three_bids[0].id, other_buyer)
    with pytest.raises(Forbidden):
        engine.coordinator.award_bid(three_bids[0].id, vendor_a)

    assert engine.coordinator.award_bid(three_bids[0].id, admin).evaluated_by == admin.user_id


def test_award_on_cancelled_tender_is_rejected(engine, open_tender, buyer, three_bids):
    engine.tender_service.cancel_tender(open_tender.id, buyer)
    with pytest.raises(InvalidTransition) as exc:
        engine.coordinator.accept_bid(three_bids[0].id, buyer)
    assert exc.value.code == "TENDER_TRANSITION_INVALID"


def test_concurrent_awards_settle_exactly_one_winner(engine, open_tender, buyer, three_bids):
    engine.tender_service.close_tender(open_tender.id, buyer)
    start = threading.Barrier(len(three_bids))
    results: list[object] = []
    lock = threading.Lock()

    def _award(bid_id):
        start.wait()
        try:
            outcome = engine.coordinator.award_bid(bid_id, buyer)
        except ApiError as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_award, args=(b.id,)) for b in three_bids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    winners = [r for r in results if not isinstance(r, ApiError)]
    losers = [r for r in results if isinstance(r, ApiError)]
    assert len(winners) == 1
    assert len(losers) == 2
    assert all(isinstance(e, (AlreadyProcessed, InvalidTransition)) for e in losers)
    assert engine.bids.count_accepted(open_tender.id) == 1
    assert engine.tenders.get(open_tender.id).status is TenderStatus.AWARDED


def test_award_notifies_winner_and_other_bidders(engine, open_tender, buyer, notifier, three_bids):
    engine.tender_service.close_tender(open_tender.id, buyer)
    engine.coordinator.award_bid(three_bids[0].id, buyer)

    by_type: dict[str, set[int]] = {}
    for item in notifier.sent:
        by_type.setdefault(item["type"], set()).add(item["user_id"])
    assert by_type["new_bid"] == {buyer.user_id}
    assert by_type["bid_awarded"] == {three_bids[0].vendor_id}
    assert by_type["bid_not_selected"] == {three_bids[1].vendor_id, three_bids[2].vendor_id}
    awarded = next(item for item in notifier.sent if item["type"] == "bid_awarded")
    assert awarded["title"] == "Congratulations! Your bid was selected"
    assert "Office network upgrade" in awarded["message"]


def test_notification_failure_does_not_undo_award(engine, open_tender, buyer, three_bids):
    class _BrokenNotifier:
        def notify(self, user_id, type, payload):
            raise RuntimeError("smtp down")

    coordinator = AwardCoordinator(
        manager=engine.manager,
        tenders=engine.tenders,
        bids=engine.bids,
        history=engine.history,
        notifier=_BrokenNotifier(),
    )
    accepted = coordinator.accept_bid(three_bids[0].id, buyer)
    assert accepted.status is BidStatus.ACCEPTED
    assert engine.tenders.get(open_tender.id).status is TenderStatus.AWARDED


def test_session_lost_mid_award_rolls_back(engine, open_tender, buyer, three_bids, monkeypatch):
    engine.tender_service.close_tender(open_tender.id, buyer)
    original = engine.bids.reject_pending_siblings

    def drop_session_then_reject(*args, **kwargs):
        engine.manager._conn.close()
        return original(*args, **kwargs)

    monkeypatch.setattr(engine.bids, "reject_pending_siblings", drop_session_then_reject)
    winner = three_bids[0]
    with pytest.raises(TransactionFailed):
        engine.coordinator.award_bid(winner.id, buyer)

    assert engine.manager.wait_until_settled(timeout=5) is ConnectionState.CONNECTED
    monkeypatch.undo()
    assert {engine.bids.get(b.id).status for b in three_bids} == {BidStatus.PENDING}
    assert engine.tenders.get(open_tender.id).status is TenderStatus.CLOSED
    assert [h.action for h in engine.history.list_for_bid(winner.id)] == ["submitted"]
