"""
Tests for the hierarchy store and the membership oracle
"""
import pytest

from common.error_handling import NotFound, Unauthorized
from company_service import accounts, hierarchy

def test_self_is_always_contained(session, tree):
    for account_id in vars(tree).values():
        assert hierarchy.is_descendant(session, account_id, account_id)

def test_descendants_at_any_depth(session, tree):
    assert hierarchy.is_descendant(session, tree.admin, tree.player)
    assert hierarchy.is_descendant(session, tree.dist, tree.player2)
    assert hierarchy.is_descendant(session, tree.sub, tree.store2)

def test_ancestors_are_not_descendants(session, tree):
    assert not hierarchy.is_descendant(session, tree.player, tree.store)
    assert not hierarchy.is_descendant(session, tree.store, tree.admin)

def test_unrelated_accounts(session, tree):
    assert not hierarchy.is_descendant(session, tree.store, tree.store2)
    assert not hierarchy.is_descendant(session, tree.store, tree.player2)
    assert not hierarchy.is_descendant(session, tree.dist2, tree.player)

def test_unknown_target(session, tree):
    assert not hierarchy.is_descendant(session, tree.admin, "does-not-exist")

def test_descendant_ids_matches_oracle(session, tree):
    below_sub = set(hierarchy.descendant_ids(session, tree.sub))
    assert below_sub == {tree.store, tree.store2, tree.player, tree.player2}
    for account_id in vars(tree).values():
        expected = account_id in below_sub or account_id == tree.sub
        assert hierarchy.is_descendant(session, tree.sub, account_id) == expected

def test_descendant_ids_include_self(session, tree):
    ids = hierarchy.descendant_ids(session, tree.store, include_self=True)
    assert ids == [tree.store, tree.player]

def test_leaf_has_no_descendants(session, tree):
    assert hierarchy.descendant_ids(session, tree.player) == []

def test_ancestor_chain(session, tree):
    assert hierarchy.ancestor_ids(session, tree.player) == [tree.store, tree.sub, tree.dist, tree.admin]
    assert hierarchy.ancestor_ids(session, tree.admin) == []

def test_list_children_paginates(session, tree):
    first = hierarchy.list_children(session, tree.admin, page=1, limit=1)
    second = hierarchy.list_children(session, tree.admin, page=2, limit=1)
    assert first["total"] == 2
    names = {first["items"][0].username, second["items"][0].username}
    assert names == {"dist", "dist2"}

def test_parent_is_creator(session, tree):
    assert hierarchy.get_company(session, tree.player).parent_id == tree.store
    assert hierarchy.get_company(session, tree.admin).parent_id is None

def test_require_company_missing(session):
    with pytest.raises(NotFound):
        hierarchy.require_company(session, "missing")

def test_require_actor_rejects_inactive(session, tree):
    accounts.toggle_status(session, tree.admin, tree.store, "INACTIVE")
    with pytest.raises(Unauthorized):
        hierarchy.require_actor(session, tree.store)

def test_require_live_rejects_deleted(session, tree):
    accounts.soft_delete(session, tree.admin, tree.player)
    with pytest.raises(NotFound):
        hierarchy.require_live(session, tree.player)
