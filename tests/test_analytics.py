"""
Tests for downline listing, tree and wallet summary
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from common.error_handling import ValidationFailed
from company_service import accounts, analytics, wallet
from company_service.models import LedgerType

def _names(page):
    return {row["username"] for row in page["data"]}

class TestDownlinePage:

    def test_excludes_self_and_outsiders(self, session, tree):
        page = analytics.downline_page(session, tree.dist)
        assert _names(page) == {"sub", "store", "store2", "player", "player2"}
        assert page["meta"]["total"] == 5

    def test_admin_sees_everything(self, session, tree):
        page = analytics.downline_page(session, tree.admin, limit=50)
        assert page["meta"]["total"] == 7

    def test_status_defaults_to_active(self, session, tree):
        accounts.toggle_status(session, tree.sub, tree.store2, "INACTIVE")
        assert "store2" not in _names(analytics.downline_page(session, tree.sub))
        assert "store2" in _names(analytics.downline_page(session, tree.sub, status="ALL_STATUS"))
        assert _names(analytics.downline_page(session, tree.sub, status="INACTIVE")) == {"store2"}

    def test_role_filter(self, session, tree):
        page = analytics.downline_page(session, tree.admin, role="PLAYER")
        assert _names(page) == {"player", "player2"}
        assert analytics.downline_page(session, tree.admin, role="ALL")["meta"]["total"] == 7

    def test_search(self, session, tree):
        accounts.update_account(session, tree.admin, tree.store2, {"contact_number": "+1-555-0199"})
        assert _names(analytics.downline_page(session, tree.admin, q="PLAY")) == {"player", "player2"}
        assert _names(analytics.downline_page(session, tree.admin, q="0199")) == {"store2"}

    def test_sorting_and_whitelist(self, session, tree):
        page = analytics.downline_page(session, tree.sub, sort="username", order="asc")
        assert [row["username"] for row in page["data"]] == ["player", "player2", "store", "store2"]
        assert page["meta"]["sort_by"] == "username"
        assert page["meta"]["sort_order"] == "asc"

        fallback = analytics.downline_page(session, tree.sub, sort="password; DROP TABLE companies")
        assert fallback["meta"]["sort_by"] == "created_at"
        assert fallback["meta"]["sort_order"] == "desc"

    def test_pagination(self, session, tree):
        first = analytics.downline_page(session, tree.admin, page=1, limit=3, sort="username", order="asc")
        third = analytics.downline_page(session, tree.admin, page=3, limit=3, sort="username", order="asc")
        assert first["meta"]["total_pages"] == 3
        assert len(first["data"]) == 3
        assert len(third["data"]) == 1

    def test_balances_included(self, session, funded):
        page = analytics.downline_page(session, funded.sub, sort="username", order="asc")
        balances = {row["username"]: row["balance"] for row in page["data"]}
        assert balances["store"] == Decimal("1000.00")
        assert balances["player"] == Decimal("0.00")

    @pytest.mark.parametrize("kwargs", [{"status": "SLEEPING"}, {"role": "KING"}])
    def test_invalid_filters(self, session, tree, kwargs):
        with pytest.raises(ValidationFailed):
            analytics.downline_page(session, tree.admin, **kwargs)

class TestDownlineTree:

    def test_nested_structure(self, session, funded):
        root = analytics.downline_tree(session, funded.sub)
        assert root["username"] == "sub"
        assert root["children_count"] == 2
        children = {c["username"]: c for c in root["children"]}
        assert set(children) == {"store", "store2"}
        assert children["store"]["balance"] == Decimal("1000.00")
        assert [c["username"] for c in children["store"]["children"]] == ["player"]
        assert children["store"]["children"][0]["children"] == []

    def test_max_depth(self, session, tree):
        root = analytics.downline_tree(session, tree.admin, max_depth=1)
        assert {c["username"] for c in root["children"]} == {"dist", "dist2"}
        assert all(c["children"] == [] for c in root["children"])
        dist = next(c for c in root["children"] if c["username"] == "dist")
        assert dist["children_count"] == 1

class TestWalletSummary:

    def test_totals(self, session, funded):
        wallet.transfer(session, funded.store, funded.player, 40)
        wallet.load_self(session, funded.admin, 20000)
        wallet.transfer(session, funded.admin, funded.dist2, 15000)

        summary = analytics.wallet_summary(session, funded.admin)
        assert summary["total_balance"] == Decimal("21000.00")
        # admin, dist, dist2, sub, store, player
        assert summary["wallet_count"] == 6
        assert summary["average_balance"] == Decimal("3500.00")

        high = [row["username"] for row in summary["high_balance_users"]]
        assert high == ["dist2"]
        low = [row["username"] for row in summary["low_balance_users"]]
        assert set(low) == {"dist", "sub", "player"}
        assert low[-1] == "player"

        by_role = {row["role"]: row for row in summary["by_role"]}
        assert by_role["STORE"]["count"] == 2
        assert by_role["STORE"]["total_balance"] == Decimal("960.00")

    def test_empty_subtree(self, session, tree):
        summary = analytics.wallet_summary(session, tree.player)
        assert summary["wallet_count"] == 0
        assert summary["total_balance"] == Decimal("0.00")
        assert summary["average_balance"] == Decimal("0.00")
        assert summary["by_role"] == []

WIDE = {"start": datetime(2000, 1, 1), "end": datetime(2100, 1, 1)}

@pytest.fixture
def activity(session, funded):
    """funded tree plus game and commission postings below sub"""
    wallet.transfer(session, funded.store, funded.player, 200)
    wallet.post_entry(session, funded.player, LedgerType.BET, 50, source_type="GAME", source_id="round-1")
    wallet.post_entry(session, funded.player, LedgerType.WIN, 20, source_type="GAME", source_id="round-1")
    wallet.post_entry(session, funded.store, LedgerType.COMMISSION, 5)
    wallet.post_entry(session, funded.store2, LedgerType.ADJUSTMENT, 3, remark="manual fix")
    accounts.toggle_status(session, funded.sub, funded.store2, "INACTIVE")
    return funded

class TestDownlineOverview:

    def test_counts_and_balances(self, session, activity):
        overview = analytics.downline_overview(session, activity.sub, **WIDE)["overview"]
        assert overview["total_downline"] == 4
        assert overview["active_users"] == 3
        assert overview["inactive_users"] == 1
        assert overview["new_users"] == 4
        # sub 0 + store 805 + player 170 + store2 3
        assert overview["total_balance"] == Decimal("978.00")

    def test_game_totals(self, session, activity):
        overview = analytics.downline_overview(session, activity.sub, **WIDE)["overview"]
        assert overview["total_bets"] == {"amount": Decimal("50.00"), "count": 1}
        assert overview["total_wins"] == {"amount": Decimal("20.00"), "count": 1}
        assert overview["net_revenue"] == Decimal("30.00")
        assert overview["house_edge"] == Decimal("60.00")
        assert overview["total_commissions"] == Decimal("5.00")

    def test_ledger_breakdown_by_type(self, session, activity):
        result = analytics.downline_overview(session, activity.sub, **WIDE)
        by_type = {row["type"]: (row["amount"], row["count"]) for row in result["ledger_by_type"]}
        assert by_type == {
            "RECHARGE": (Decimal("2200.00"), 3),
            "WITHDRAW": (Decimal("1200.00"), 2),
            "BET": (Decimal("50.00"), 1),
            "WIN": (Decimal("20.00"), 1),
            "COMMISSION": (Decimal("5.00"), 1),
            "ADJUSTMENT": (Decimal("3.00"), 1),
        }
        assert [row["type"] for row in result["ledger_by_type"]][:2] == ["RECHARGE", "WITHDRAW"]

    def test_movements_cover_downline_only(self, session, activity):
        result = analytics.downline_overview(session, activity.sub, **WIDE)
        movements = result["recent_movements"]
        assert len(movements) == 3
        assert {m["company"]["username"] for m in movements} == {"store", "player"}
        assert {m["type"] for m in movements} == {"RECHARGE", "WITHDRAW"}
        assert [a["company"]["username"] for a in result["adjustments"]] == ["store2"]

    def test_own_bets_counted_but_not_commissions(self, session, activity):
        overview = analytics.downline_overview(session, activity.player, **WIDE)["overview"]
        assert overview["total_downline"] == 0
        assert overview["total_bets"]["amount"] == Decimal("50.00")
        assert overview["total_commissions"] == Decimal("0.00")

    def test_window_excludes_ledger_not_accounts(self, session, activity):
        result = analytics.downline_overview(session, activity.sub, start=datetime(2099, 1, 1))
        overview = result["overview"]
        assert result["period"]["label"] == "custom"
        assert result["ledger_by_type"] == []
        assert result["recent_movements"] == []
        assert overview["total_bets"] == {"amount": Decimal("0.00"), "count": 0}
        assert overview["house_edge"] == Decimal("0.00")
        assert overview["new_users"] == 0
        assert overview["total_downline"] == 4
        assert overview["total_balance"] == Decimal("978.00")

    def test_default_period(self, session, tree):
        period = analytics.downline_overview(session, tree.sub, period="7d")["period"]
        assert period["label"] == "7d"
        assert period["end"] - period["start"] == timedelta(days=7)
        assert analytics.downline_overview(session, tree.sub)["period"]["label"] == "30d"

    def test_bad_ranges(self, session, tree):
        with pytest.raises(ValidationFailed):
            analytics.downline_overview(session, tree.sub, period="2w")
        with pytest.raises(ValidationFailed):
            analytics.downline_overview(session, tree.sub, start=datetime(2030, 1, 1), end=datetime(2020, 1, 1))
