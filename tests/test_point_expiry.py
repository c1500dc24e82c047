from datetime import datetime, timedelta

from loyalty_engine.jobs import sweeps
from loyalty_engine.models import LedgerEntryKind
from loyalty_engine.services import ledger_service

T0 = datetime(2025, 11, 1, 12, 0, 0)


def _seed(session, account_id):
    ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.BONUS,
        delta=50,
        reason="Welcome bonus",
        now=T0 - timedelta(hours=1),
    )
    grant = ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.EARN,
        delta=100,
        reason="Purchase",
        expires_at=T0 + timedelta(days=1),
        now=T0,
    )
    ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.SPEND,
        delta=-30,
        reason="Voucher",
        now=T0 + timedelta(hours=1),
    )
    session.commit()
    return grant


def test_debits_consume_earliest_expiring_grant_first(session, ranks, account_factory):
    account_id = account_factory()
    grant = _seed(session, account_id)

    remaining = ledger_service.remaining_grants(ledger_service._ordered_entries(session, account_id))

    assert [(item.entry.ledger_entry_id, item.remaining) for item in remaining] == [(grant.ledger_entry_id, 70)]


def test_sweep_expires_remaining_grant_exactly_once(session, ranks, account_factory):
    account_id = account_factory()
    grant = _seed(session, account_id)
    later = T0 + timedelta(days=2)

    summary = ledger_service.sweep_expired_points(session, now=later)
    session.commit()

    assert summary == {"accounts_processed": 1, "entries_expired": 1, "points_expired": 70}
    expiry = ledger_service.get_ledger_history(session, account_id, kind=LedgerEntryKind.EXPIRE)
    assert len(expiry) == 1
    assert expiry[0].points_delta == -70
    assert expiry[0].offsets_entry_id == grant.ledger_entry_id
    assert expiry[0].balance_after == 50

    again = ledger_service.sweep_expired_points(session, now=later + timedelta(hours=1))
    session.commit()

    assert again["entries_expired"] == 0
    balance = ledger_service.get_balance(session, account_id)
    assert balance.current_points == 50
    assert balance.lifetime_points == 150
    assert ledger_service.replay_account(session, account_id).consistent


def test_grants_not_yet_due_are_left_alone(session, ranks, account_factory):
    account_id = account_factory()
    _seed(session, account_id)

    summary = ledger_service.sweep_expired_points(session, now=T0 + timedelta(hours=12))

    assert summary["entries_expired"] == 0
    assert ledger_service.get_balance(session, account_id).current_points == 120


def test_fully_spent_grant_expires_nothing(session, ranks, account_factory):
    account_id = account_factory()
    ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.EARN,
        delta=40,
        reason="Purchase",
        expires_at=T0 + timedelta(days=1),
        now=T0,
    )
    ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.SPEND,
        delta=-40,
        reason="Voucher",
        now=T0 + timedelta(hours=1),
    )
    session.commit()

    expired = ledger_service.expire_account_points(session, account_id, now=T0 + timedelta(days=3))

    assert expired == []
    assert ledger_service.get_balance(session, account_id).current_points == 0


def test_spending_after_a_grant_lapsed_does_not_draw_on_it(session, ranks, account_factory):
    account_id = account_factory()
    grant = ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.EARN,
        delta=100,
        reason="Purchase",
        expires_at=T0 + timedelta(days=1),
        now=T0,
    )
    ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.BONUS,
        delta=100,
        reason="Anniversary bonus",
        now=T0 + timedelta(days=2),
    )
    ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.SPEND,
        delta=-100,
        reason="Voucher",
        now=T0 + timedelta(days=2),
    )
    session.commit()

    summary = ledger_service.sweep_expired_points(session, now=T0 + timedelta(days=2, hours=1))
    session.commit()

    assert summary["points_expired"] == 100
    expiry = ledger_service.get_ledger_history(session, account_id, kind=LedgerEntryKind.EXPIRE)
    assert [entry.offsets_entry_id for entry in expiry] == [grant.ledger_entry_id]
    assert ledger_service.get_balance(session, account_id).current_points == 0
    assert ledger_service.replay_account(session, account_id).consistent


def test_expiry_is_stamped_after_the_latest_entry(session, ranks, account_factory):
    account_id = account_factory()
    _seed(session, account_id)
    ledger_service.post(
        session,
        account_id=account_id,
        kind=LedgerEntryKind.SPEND,
        delta=-10,
        reason="Voucher",
        now=T0 + timedelta(days=3),
    )
    session.commit()

    expired = ledger_service.expire_account_points(session, account_id, now=T0 + timedelta(days=2))
    session.commit()

    assert [entry.points_delta for entry in expired] == [-70]
    assert expired[0].created_at == T0 + timedelta(days=3)


def test_sweep_honours_stop_request(session, ranks, account_factory):
    first = account_factory()
    second = account_factory()
    _seed(session, first)
    _seed(session, second)

    summary = ledger_service.sweep_expired_points(session, now=T0 + timedelta(days=2), should_stop=lambda: True)

    assert summary["accounts_processed"] == 0


def test_scheduled_sweeps_expire_points_and_vouchers(session_factory, session, ranks, account_factory, monkeypatch):
    account_id = account_factory()
    _seed(session, account_id)
    monkeypatch.setattr(sweeps, "SessionLocal", session_factory)

    summary = sweeps.run_sweeps_once(T0 + timedelta(days=2))

    assert summary["entries_expired"] == 1
    assert summary["points_expired"] == 70
    assert summary["vouchers_expired"] == 0
    session.expire_all()
    assert ledger_service.get_balance(session, account_id).current_points == 50


def test_scheduled_point_sweep_skips_a_failing_account(session_factory, session, ranks, account_factory, monkeypatch):
    broken = account_factory()
    healthy = account_factory()
    _seed(session, broken)
    _seed(session, healthy)
    monkeypatch.setattr(sweeps, "SessionLocal", session_factory)
    real_expire = ledger_service.expire_account_points

    def flaky_expire(db, account_id, **kwargs):
        if account_id == broken:
            raise RuntimeError("lock timeout")
        return real_expire(db, account_id, **kwargs)

    monkeypatch.setattr(ledger_service, "expire_account_points", flaky_expire)

    summary = sweeps.run_sweeps_once(T0 + timedelta(days=2))

    assert summary["accounts_processed"] == 1
    assert summary["points_expired"] == 70
    session.expire_all()
    assert ledger_service.get_balance(session, healthy).current_points == 50
    assert ledger_service.get_balance(session, broken).current_points == 120


def test_scheduled_point_sweep_stops_when_requested(session_factory, session, ranks, account_factory, monkeypatch):
    account_id = account_factory()
    _seed(session, account_id)
    monkeypatch.setattr(sweeps, "SessionLocal", session_factory)
    sweeps.request_stop()
    try:
        summary = sweeps._expire_points(T0 + timedelta(days=2))
    finally:
        sweeps._stop_requested.clear()

    assert summary["accounts_processed"] == 0
    session.expire_all()
    assert ledger_service.get_balance(session, account_id).current_points == 120
