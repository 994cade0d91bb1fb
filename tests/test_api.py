"""Tests for forexdesk.api.routers — broker, signal and settings endpoints."""

import logging
import sqlite3

import httpx
import pytest
from fastapi.testclient import TestClient

from forexdesk.api.routers import configure_routers
from forexdesk.config import Config
from forexdesk.main import app, build_services
from forexdesk.reconciler import SignalOrderReconciler
from forexdesk.repos.db import init_db
from forexdesk.repos.link_repo import SignalOrderLinkRepo
from forexdesk.repos.signal_repo import SignalRepo
from forexdesk.repos.user_repo import UserRepo

client = TestClient(app)

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}
NO_KEYS = {"X-User-Id": "nokeys"}


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def services(tmp_path):
    """Fresh SQLite store with three users, wired into the routers."""
    db_path = str(tmp_path / "forexdesk.db")
    init_db(db_path)
    users = UserRepo(db_path)
    users.create_user("alice", practice_account_id="101-001-1-001", practice_token="alice-practice-token")
    users.create_user("bob", environment="live", live_account_id="001-001-2-001", live_token="bob-live-token")
    users.create_user("nokeys", practice_account_id="101-001-3-001")
    reconciler = SignalOrderReconciler(SignalRepo(db_path), SignalOrderLinkRepo(db_path))
    configure_routers(
        user_repo=users, reconciler=reconciler, config=Config(trust_user_header=True),
    )
    return users, reconciler


class BrokerStub:
    """Patches httpx.AsyncClient verbs; routes canned responses by URL suffix."""

    def __init__(self, monkeypatch):
        self.calls: list[dict] = []
        self.routes: dict[str, tuple[int, object]] = {}
        for method in ("get", "put", "post"):
            monkeypatch.setattr(httpx.AsyncClient, method, self._handler(method))

    def on(self, suffix: str, body, status: int = 200):
        self.routes[suffix] = (status, body)

    def _handler(self, method):
        stub = self

        async def _mock(self, url, **kwargs):
            stub.calls.append({"method": method, "url": url, **kwargs})
            for suffix, (status, body) in stub.routes.items():
                if url.endswith(suffix):
                    return httpx.Response(
                        status, json=body, request=httpx.Request(method.upper(), url),
                    )
            return httpx.Response(
                404, json={"errorMessage": "not stubbed"},
                request=httpx.Request(method.upper(), url),
            )

        return _mock


@pytest.fixture
def broker(monkeypatch):
    return BrokerStub(monkeypatch)


def _workspace_routes(broker):
    broker.on("/summary", {"account": {"id": "101-001-1-001", "lastTransactionID": "50"}})
    broker.on("/openTrades", {"trades": [{"id": "T1", "instrument": "EUR_USD"}]})
    broker.on("/pendingOrders", {"orders": [{"id": "O1", "tradeID": "T1"}]})
    broker.on("/openPositions", {"positions": []})
    broker.on("/transactions/idrange", {"transactions": [{"id": "49"}, {"id": "50"}]})


# ── Auth & credentials ───────────────────────────────────────────────────


class TestAuth:
    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/oanda/workspace"),
            ("get", "/oanda/account"),
            ("get", "/signals"),
            ("get", "/settings/api-keys"),
        ],
    )
    def test_no_session_is_401(self, broker, method, path):
        resp = getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}
        assert broker.calls == []

    def test_no_session_on_mutation_is_401(self, broker):
        resp = client.post("/oanda/trades/close", json={"tradeId": "T1"})
        assert resp.status_code == 401
        assert broker.calls == []

    @pytest.mark.parametrize(
        "method, path, body",
        [
            ("get", "/oanda/workspace", None),
            ("get", "/oanda/account", None),
            ("get", "/oanda/candles", None),
            ("get", "/oanda/pricing", None),
            ("get", "/oanda/orders", None),
            ("post", "/oanda/orders/cancel", {"orderId": "42"}),
            ("post", "/oanda/positions/close", {"instrument": "EUR_USD"}),
            ("post", "/oanda/trades/close", {"tradeId": "T1"}),
            ("post", "/oanda/trades/risk", {"tradeId": "T1", "stopLoss": 1.05}),
            ("post", "/oanda/orders/place",
             {"instrument": "EUR_USD", "side": "BUY", "orderType": "MARKET", "units": 10}),
        ],
    )
    def test_missing_keys_is_403_without_broker_call(self, broker, method, path, body):
        kwargs = {"headers": NO_KEYS}
        if body is not None:
            kwargs["json"] = body

        resp = getattr(client, method)(path, **kwargs)

        assert resp.status_code == 403
        assert resp.json()["error"] == "Missing API Keys"
        assert resp.json()["code"] == "missing_credentials"
        assert broker.calls == []

    def test_user_header_ignored_without_opt_in(self, broker, tmp_path):
        users, _ = build_services(Config(db_path=str(tmp_path / "served.db")))
        users.create_user("alice", practice_account_id="101-001-1-001", practice_token="tok")

        for path in ("/oanda/account", "/settings/api-keys", "/signals"):
            resp = client.get(path, headers=ALICE)
            assert resp.status_code == 401
        resp = client.post(
            "/oanda/orders/place",
            json={"instrument": "EUR_USD", "side": "BUY", "orderType": "MARKET", "units": 10},
            headers=ALICE,
        )
        assert resp.status_code == 401
        assert broker.calls == []

    def test_user_header_trusted_with_opt_in(self, broker, tmp_path):
        broker.on("/summary", {"account": {"id": "101-001-1-001"}})
        config = Config(db_path=str(tmp_path / "served.db"), trust_user_header=True)
        users, _ = build_services(config)
        users.create_user("alice", practice_account_id="101-001-1-001", practice_token="tok")

        assert client.get("/oanda/account", headers=ALICE).status_code == 200

    def test_unknown_user_is_404(self, broker):
        resp = client.get("/oanda/account", headers={"X-User-Id": "ghost"})
        assert resp.status_code == 404
        assert broker.calls == []

    def test_custom_session_lookup(self, services, broker):
        users, reconciler = services
        broker.on("/summary", {"account": {"id": "X"}})
        configure_routers(
            user_repo=users,
            reconciler=reconciler,
            session_lookup=lambda request: request.cookies.get("sid"),
        )
        assert client.get("/oanda/account", headers=ALICE).status_code == 401
        client.cookies.set("sid", "alice")
        try:
            assert client.get("/oanda/account").status_code == 200
        finally:
            client.cookies.clear()


# ── Broker reads ─────────────────────────────────────────────────────────


class TestWorkspace:
    def test_full_snapshot(self, broker):
        _workspace_routes(broker)

        resp = client.get("/oanda/workspace", headers=ALICE)

        assert resp.status_code == 200
        data = resp.json()
        assert data["account"]["id"] == "101-001-1-001"
        assert data["orders"][0]["instrument"] == "EUR_USD"
        assert [t["id"] for t in data["activity"]] == ["50", "49"]
        assert set(data) == {"account", "trades", "orders", "positions", "activity"}
        range_call = next(c for c in broker.calls if c["url"].endswith("/idrange"))
        assert range_call["params"] == {"from": "1", "to": "50"}

    def test_degraded_resource_still_200(self, broker):
        _workspace_routes(broker)
        broker.on("/openTrades", {"errorMessage": "boom"}, status=500)

        resp = client.get("/oanda/workspace", headers=ALICE)

        assert resp.status_code == 200
        assert resp.json()["trades"] == []
        assert resp.json()["positions"] == []

    def test_degraded_resource_warned_once(self, broker, caplog):
        _workspace_routes(broker)
        broker.on("/openTrades", {"errorMessage": "boom"}, status=500)

        with caplog.at_level(logging.WARNING, logger="forexdesk"):
            client.get("/oanda/workspace", headers=ALICE)

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert warnings[0].name == "forexdesk.workspace"

    def test_summary_failure_passes_status_through(self, broker):
        broker.on("/summary", {"errorMessage": "Insufficient authorization"}, status=401)

        resp = client.get("/oanda/workspace", headers=ALICE)

        assert resp.status_code == 401
        assert resp.json() == {
            "error": "Failed to fetch workspace data",
            "details": {"errorMessage": "Insufficient authorization"},
        }

    def test_live_user_hits_live_host(self, broker):
        broker.on("/summary", {"account": {"id": "001-001-2-001"}})

        client.get("/oanda/account", headers=BOB)

        assert broker.calls[0]["url"].startswith("https://api-fxtrade.oanda.com/")
        assert broker.calls[0]["headers"]["Authorization"] == "Bearer bob-live-token"


class TestCandlesAndPricing:
    def test_candle_defaults(self, broker):
        broker.on("/candles", {"candles": []})

        resp = client.get("/oanda/candles", headers=ALICE)

        assert resp.status_code == 200
        call = broker.calls[0]
        assert call["url"].endswith("/v3/instruments/EUR_USD/candles")
        assert call["params"]["granularity"] == "M15"
        assert call["params"]["count"] == "200"

    def test_candle_error_passthrough(self, broker):
        broker.on("/candles", {"errorMessage": "Invalid value specified for 'granularity'"}, status=400)

        resp = client.get("/oanda/candles?instrument=GBP_USD&granularity=X9", headers=ALICE)

        assert resp.status_code == 400
        assert resp.json()["error"] == "Failed to fetch candle data"

    def test_pricing(self, broker):
        broker.on("/pricing", {"prices": [{"instrument": "USD_JPY"}]})

        resp = client.get("/oanda/pricing?instruments=USD_JPY", headers=ALICE)

        assert resp.json() == {"prices": [{"instrument": "USD_JPY"}]}
        assert broker.calls[0]["params"] == {"instruments": "USD_JPY"}

    def test_open_trades(self, broker):
        broker.on("/openTrades", {"trades": [{"id": "T1"}]})
        resp = client.get("/oanda/orders", headers=ALICE)
        assert resp.json() == {"trades": [{"id": "T1"}]}


# ── Broker mutations ─────────────────────────────────────────────────────


class TestMutations:
    def test_close_position(self, broker):
        broker.on("/positions/EUR_USD/close", {"longOrderCreateTransaction": {"id": "7"}})

        resp = client.post("/oanda/positions/close", json={"instrument": "EUR_USD"}, headers=ALICE)

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert broker.calls[0]["json"] == {"longUnits": "ALL", "shortUnits": "ALL"}

    def test_close_position_requires_instrument(self, broker):
        resp = client.post("/oanda/positions/close", json={}, headers=ALICE)
        assert resp.status_code == 400
        assert broker.calls == []

    def test_cancel_order_upstream_404(self, broker):
        broker.on("/orders/99/cancel", {"errorMessage": "Order not found"}, status=404)

        resp = client.post("/oanda/orders/cancel", json={"orderId": "99"}, headers=ALICE)

        assert resp.status_code == 404
        assert resp.json()["error"] == "Failed to cancel order"
        assert resp.json()["details"] == {"errorMessage": "Order not found"}

    def test_close_trade(self, broker):
        broker.on("/trades/T1/close", {"orderFillTransaction": {"id": "8"}})
        resp = client.post("/oanda/trades/close", json={"tradeId": "T1"}, headers=ALICE)
        assert resp.json() == {"success": True, "result": {"orderFillTransaction": {"id": "8"}}}

    def test_risk_update_sends_all_three_keys(self, broker):
        broker.on("/trades/T1/orders", {"stopLossOrderTransaction": {"id": "9"}})

        resp = client.post(
            "/oanda/trades/risk",
            json={"tradeId": "T1", "stopLoss": 1.05, "takeProfit": None},
            headers=ALICE,
        )

        assert resp.status_code == 200
        assert broker.calls[0]["json"] == {
            "stopLoss": {"price": "1.05"},
            "takeProfit": None,
            "trailingStopLoss": None,
        }

    @pytest.mark.parametrize("value", [-1, 0, "abc"])
    def test_risk_update_validation_never_reaches_broker(self, broker, value):
        resp = client.post(
            "/oanda/trades/risk", json={"tradeId": "T1", "stopLoss": value}, headers=ALICE,
        )
        assert resp.status_code == 400
        assert "stopLoss" in resp.json()["error"]
        assert broker.calls == []

    def test_risk_update_validation_before_credentials(self, broker):
        resp = client.post("/oanda/trades/risk", json={"stopLoss": 1.1}, headers=NO_KEYS)
        assert resp.status_code == 400

    def test_transport_failure_is_500(self, monkeypatch):
        async def _mock_put(self, url, **kwargs):
            raise httpx.ConnectError("connection refused", request=httpx.Request("PUT", url))

        monkeypatch.setattr(httpx.AsyncClient, "put", _mock_put)

        resp = client.post("/oanda/trades/close", json={"tradeId": "T1"}, headers=ALICE)

        assert resp.status_code == 500
        assert resp.json()["error"] == "Failed to close trade"


# ── Order placement & signals ────────────────────────────────────────────


class TestSignalFlow:
    def _create_signal(self, headers=ALICE, **overrides):
        body = {"instrument": "EUR_USD", "action": "BUY", "rationale": "Trend continuation"}
        body.update(overrides)
        resp = client.post("/signals", json=body, headers=headers)
        assert resp.status_code == 201
        return resp.json()["signal"]

    def test_create_and_list(self):
        first = self._create_signal()
        second = self._create_signal(instrument="GBP_USD")

        resp = client.get("/signals", headers=ALICE)

        assert [s["id"] for s in resp.json()["signals"]] == [second["id"], first["id"]]
        single = client.get(f"/signals?id={first['id']}", headers=ALICE).json()
        assert single["signal"]["instrument"] == "EUR_USD"

    def test_create_requires_fields(self):
        resp = client.post("/signals", json={"instrument": "EUR_USD"}, headers=ALICE)
        assert resp.status_code == 400

    def test_other_users_signal_is_404(self):
        signal = self._create_signal()
        resp = client.get(f"/signals?id={signal['id']}", headers=BOB)
        assert resp.status_code == 404

    def test_close_signal(self):
        signal = self._create_signal()

        resp = client.patch("/signals", json={"id": signal["id"], "status": "closed"}, headers=ALICE)

        assert resp.json() == {"updated": 1}
        stored = client.get(f"/signals?id={signal['id']}", headers=ALICE).json()["signal"]
        assert stored["status"] == "closed"

    def test_reopen_rejected(self):
        signal = self._create_signal()
        resp = client.patch("/signals", json={"id": signal["id"], "status": "open"}, headers=ALICE)
        assert resp.status_code == 400

    def test_place_order_without_signal(self, broker):
        broker.on("/orders", {"orderCreateTransaction": {"id": "11"}})

        resp = client.post(
            "/oanda/orders/place",
            json={"instrument": "EUR_USD", "side": "SELL", "orderType": "MARKET", "units": 500},
            headers=ALICE,
        )

        assert resp.status_code == 200
        assert resp.json()["link"] is None
        assert broker.calls[0]["json"]["order"]["units"] == "-500"

    def test_place_order_links_signal(self, broker):
        broker.on("/orders", {
            "orderCreateTransaction": {"id": "21"},
            "orderFillTransaction": {"orderID": "21", "tradeOpened": {"tradeID": "22"}},
        })
        signal = self._create_signal()
        order = {
            "instrument": "EUR_USD", "side": "BUY", "orderType": "MARKET",
            "units": 1000, "signalId": signal["id"],
        }

        resp = client.post("/oanda/orders/place", json=order, headers=ALICE)

        link = resp.json()["link"]
        assert link["status"] == "filled"
        assert link["oandaOrderId"] == "21"
        assert link["oandaTradeId"] == "22"

        again = client.post("/oanda/orders/place", json=order, headers=ALICE)
        assert again.status_code == 409
        assert len(broker.calls) == 1

        links = client.get(f"/signal-orders?signalId={signal['id']}", headers=ALICE).json()
        assert [entry["id"] for entry in links["links"]] == [link["id"]]

    def test_link_storage_failure_keeps_broker_result(self, broker, monkeypatch):
        broker.on("/orders", {"orderCreateTransaction": {"id": "41"}})
        signal = self._create_signal()

        def _locked(self, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(SignalOrderLinkRepo, "insert_link", _locked)

        resp = client.post(
            "/oanda/orders/place",
            json={"instrument": "EUR_USD", "side": "BUY", "orderType": "MARKET",
                  "units": 1000, "signalId": signal["id"]},
            headers=ALICE,
        )

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["result"] == {"orderCreateTransaction": {"id": "41"}}
        assert resp.json()["link"] is None

    def test_place_order_invalid_ticket(self, broker):
        resp = client.post(
            "/oanda/orders/place",
            json={"instrument": "EUR_USD", "side": "BUY", "orderType": "LIMIT", "units": 10},
            headers=ALICE,
        )
        assert resp.status_code == 400
        assert "entryPrice" in resp.json()["error"]
        assert broker.calls == []

    def test_place_order_for_foreign_signal(self, broker):
        signal = self._create_signal(headers=BOB)
        resp = client.post(
            "/oanda/orders/place",
            json={"instrument": "EUR_USD", "side": "BUY", "orderType": "MARKET",
                  "units": 1, "signalId": signal["id"]},
            headers=ALICE,
        )
        assert resp.status_code == 404
        assert broker.calls == []

    def test_link_status_update_scoped_to_owner(self, broker):
        broker.on("/orders", {"orderCreateTransaction": {"id": "31"}})
        signal = self._create_signal()
        placed = client.post(
            "/oanda/orders/place",
            json={"instrument": "EUR_USD", "side": "BUY", "orderType": "LIMIT",
                  "units": 1000, "entryPrice": 1.08, "signalId": signal["id"]},
            headers=ALICE,
        ).json()
        link_id = placed["link"]["id"]
        assert placed["link"]["status"] == "submitted"

        foreign = client.post(
            "/signal-orders/status", json={"linkId": link_id, "status": "closed"}, headers=BOB,
        )
        assert foreign.status_code == 200
        assert foreign.json() == {"updated": 0}

        own = client.post(
            "/signal-orders/status",
            json={"linkId": link_id, "status": "filled", "oandaTradeId": "32"},
            headers=ALICE,
        )
        assert own.json() == {"updated": 1}
        stored = client.get("/signal-orders", headers=ALICE).json()["links"][0]
        assert stored["oandaTradeId"] == "32"
        assert stored["oandaOrderId"] == "31"

    def test_link_status_requires_fields(self):
        resp = client.post("/signal-orders/status", json={"linkId": "x"}, headers=ALICE)
        assert resp.status_code == 400
        assert resp.json()["error"] == "linkId and status are required"


# ── Credential settings ──────────────────────────────────────────────────


class TestApiKeys:
    def test_tokens_are_masked(self):
        resp = client.get("/settings/api-keys", headers=ALICE)

        data = resp.json()
        assert data["settings"]["oandaPracticeAccountId"] == "101-001-1-001"
        assert data["settings"]["oandaPracticeToken"] == "alic••••••••••oken"
        assert data["settings"]["oandaLiveToken"] == ""
        assert data["hasPracticeKeys"] is True
        assert data["hasLiveKeys"] is False

    def test_masked_echo_is_ignored(self, services):
        users, _ = services
        masked = client.get("/settings/api-keys", headers=ALICE).json()["settings"]

        resp = client.post("/settings/api-keys", json=masked, headers=ALICE)

        assert resp.json()["success"] is True
        assert users.get_broker_settings("alice").practice.api_token == "alice-practice-token"

    def test_switch_environment_then_missing_keys(self, broker):
        client.post(
            "/settings/api-keys", json={"oandaEnvironment": "live"}, headers=ALICE,
        )

        resp = client.get("/oanda/account", headers=ALICE)

        assert resp.status_code == 403
        assert resp.json()["environment"] == "live"
        assert broker.calls == []

    def test_new_token_used_on_next_request(self, broker):
        broker.on("/summary", {"account": {}})
        client.post("/settings/api-keys", json={"oandaPracticeToken": "rotated"}, headers=ALICE)

        client.get("/oanda/account", headers=ALICE)

        assert broker.calls[0]["headers"]["Authorization"] == "Bearer rotated"

    def test_unknown_user(self):
        ghost = {"X-User-Id": "ghost"}
        assert client.get("/settings/api-keys", headers=ghost).status_code == 404
        resp = client.post("/settings/api-keys", json={"oandaPracticeToken": "t"}, headers=ghost)
        assert resp.status_code == 404


def test_health():
    assert client.get("/health").json() == {"status": "ok"}
