"""
Shared fixtures: a throwaway SQLite database per test run and a small
reseller tree to work against.
"""
import os
import tempfile
from types import SimpleNamespace

_db_dir = tempfile.mkdtemp(prefix="company-ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'ledger.db')}"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["CACHE_ENABLED"] = "false"
os.environ["STORE_RETRY_BASE_DELAY"] = "0.01"

import pytest

from company_service import accounts, wallet
from company_service.db import SessionLocal, engine
from company_service.models import Base

PASSWORD = "secret-pass"

@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield

@pytest.fixture
def session():
    with SessionLocal() as db:
        yield db

@pytest.fixture
def tree(session):
    """ADMIN -> DISTRIBUTOR -> SUB_DISTRIBUTOR -> STORE -> PLAYER, plus siblings.

    admin
    ├── dist
    │   └── sub
    │       ├── store
    │       │   └── player
    │       └── store2
    │           └── player2
    └── dist2
    """
    admin = accounts.create_root_admin(session, "admin", PASSWORD, "admin@example.com")
    dist = accounts.create_account(session, admin["id"], {"username": "dist", "password": PASSWORD, "role": "DISTRIBUTOR"})
    dist2 = accounts.create_account(session, admin["id"], {"username": "dist2", "password": PASSWORD, "role": "DISTRIBUTOR"})
    sub = accounts.create_account(session, dist["id"], {"username": "sub", "password": PASSWORD, "role": "SUB_DISTRIBUTOR"})
    store = accounts.create_account(session, sub["id"], {"username": "store", "password": PASSWORD, "role": "STORE"})
    store2 = accounts.create_account(session, sub["id"], {"username": "store2", "password": PASSWORD, "role": "STORE"})
    player = accounts.create_account(session, store["id"], {"username": "player", "password": PASSWORD, "role": "PLAYER"})
    player2 = accounts.create_account(session, store2["id"], {"username": "player2", "password": PASSWORD, "role": "PLAYER"})
    return SimpleNamespace(
        admin=admin["id"],
        dist=dist["id"],
        dist2=dist2["id"],
        sub=sub["id"],
        store=store["id"],
        store2=store2["id"],
        player=player["id"],
        player2=player2["id"],
    )

@pytest.fixture
def funded(session, tree):
    """The same tree with 1000 coins pushed down to the store"""
    wallet.load_self(session, tree.admin, "1000")
    wallet.transfer(session, tree.admin, tree.dist, "1000")
    wallet.transfer(session, tree.dist, tree.sub, "1000")
    wallet.transfer(session, tree.sub, tree.store, "1000")
    return tree
