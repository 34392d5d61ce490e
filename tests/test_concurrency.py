"""
Concurrent transfers against one wallet, each request on its own session
"""
import threading
from decimal import Decimal

from sqlalchemy import func, select

from common.error_handling import InsufficientBalance
from company_service import wallet
from company_service.db import SessionLocal
from company_service.models import LedgerEntry, LedgerType, Wallet

def _run_concurrently(jobs):
    """Start every job at the same moment; return (results, errors)"""
    barrier = threading.Barrier(len(jobs))
    results, errors = [], []
    lock = threading.Lock()

    def runner(job):
        with SessionLocal() as db:
            barrier.wait()
            try:
                outcome = job(db)
            except Exception as e:
                with lock:
                    errors.append(e)
            else:
                with lock:
                    results.append(outcome)

    threads = [threading.Thread(target=runner, args=(job,)) for job in jobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors

def _balance(session, company_id):
    return session.scalar(select(Wallet.balance).where(Wallet.company_id == company_id))

def test_two_transfers_of_the_full_balance(session, tree):
    wallet.load_self(session, tree.admin, 300)

    results, errors = _run_concurrently([
        lambda db: wallet.transfer(db, tree.admin, tree.dist, 300),
        lambda db: wallet.transfer(db, tree.admin, tree.dist, 300),
    ])

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InsufficientBalance)

    session.expire_all()
    assert _balance(session, tree.admin) == Decimal("0.00")
    assert _balance(session, tree.dist) == Decimal("300.00")
    assert wallet.reconcile(session, tree.admin)["consistent"]
    assert wallet.reconcile(session, tree.dist)["consistent"]

def test_many_small_transfers_never_overdraw(session, funded):
    # store holds 1000; twelve requests of 100 can only fit ten
    jobs = [lambda db: wallet.transfer(db, funded.store, funded.player, 100) for _ in range(12)]
    results, errors = _run_concurrently(jobs)

    assert len(results) == 10
    assert len(errors) == 2
    assert all(isinstance(e, InsufficientBalance) for e in errors)

    session.expire_all()
    assert _balance(session, funded.store) == Decimal("0.00")
    assert _balance(session, funded.player) == Decimal("1000.00")
    withdrawals = session.scalar(
        select(func.count()).select_from(LedgerEntry).where(
            LedgerEntry.company_id == funded.store, LedgerEntry.type == LedgerType.WITHDRAW
        )
    )
    assert withdrawals == 10
    assert wallet.reconcile(session, funded.store)["consistent"]
    assert wallet.reconcile(session, funded.player)["consistent"]

def test_opposite_direction_transfers_do_not_deadlock(session, tree):
    wallet.load_self(session, tree.admin, 100)
    wallet.transfer(session, tree.admin, tree.dist, 50)

    results, errors = _run_concurrently([
        lambda db: wallet.transfer(db, tree.admin, tree.sub, 10),
        lambda db: wallet.transfer(db, tree.dist, tree.sub, 10),
        lambda db: wallet.transfer(db, tree.admin, tree.dist, 10),
    ])

    assert errors == []
    assert len(results) == 3
    session.expire_all()
    assert _balance(session, tree.admin) == Decimal("30.00")
    assert _balance(session, tree.dist) == Decimal("50.00")
    assert _balance(session, tree.sub) == Decimal("20.00")

def test_concurrent_duplicate_key_applies_once(session, funded):
    jobs = [
        lambda db: wallet.transfer(db, funded.store, funded.player, 250, idempotency_key="dup")
        for _ in range(4)
    ]
    results, errors = _run_concurrently(jobs)

    assert errors == []
    assert len(results) == 4
    assert all(r["sender_balance"] == Decimal("750.00") for r in results)
    session.expire_all()
    assert _balance(session, funded.store) == Decimal("750.00")
