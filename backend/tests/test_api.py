"""HTTP and WebSocket API tests."""

import json

import pytest
from starlette.websockets import WebSocketDisconnect

from tableside.main import app
from tableside.realtime import RealtimeDispatcher
from tableside.services.notification_service import ConnectionManager

API = "/api/v1"


def _check_in(client, number="12", location_id=1):
    resp = client.post(f"{API}/table-sessions/check-in", json={"location_id": location_id, "table_number": number})
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_metrics_need_manager(self, client, staff_headers, manager_headers):
        assert client.get("/metrics").status_code == 401
        assert client.get("/metrics", headers=staff_headers).status_code == 403
        resp = client.get("/metrics", headers=manager_headers)
        assert resp.status_code == 200
        assert "http_requests_total" in resp.text


class TestTablesApi:

    def test_create_and_list(self, client, manager_headers):
        resp = client.post(f"{API}/tables", json={"location_id": 1, "number": "7", "capacity": 2}, headers=manager_headers)
        assert resp.status_code == 201
        table_id = resp.json()["id"]

        listing = client.get(f"{API}/tables", params={"location_id": 1}).json()
        assert listing["total"] == 1
        assert listing["items"][0]["is_available"] is True

        assert client.get(f"{API}/tables/{table_id}").json()["available_seats"] == 2

    def test_create_needs_manager(self, client, staff_headers):
        resp = client.post(f"{API}/tables", json={"location_id": 1, "number": "7"}, headers=staff_headers)
        assert resp.status_code == 403

    def test_unknown_table(self, client):
        resp = client.get(f"{API}/tables/404")
        assert resp.status_code == 404
        assert resp.json()["kind"] == "table_not_found"

    def test_active_session(self, client, make_table):
        table = make_table(number="12")
        assert client.get(f"{API}/tables/{table.id}/session").json()["session"] is None
        seated = _check_in(client)
        body = client.get(f"{API}/tables/{table.id}/session").json()
        assert body["session"]["id"] == seated["session_id"]

    def test_deactivate_occupied_table(self, client, make_table, manager_headers):
        table = make_table(number="12")
        _check_in(client)
        resp = client.delete(f"{API}/tables/{table.id}", headers=manager_headers)
        assert resp.status_code == 409


class TestSessionsApi:

    def test_check_in_and_join(self, client, make_table):
        make_table(number="12", capacity=2)
        first = _check_in(client)
        assert first["session_created"] is True

        resp = client.post(f"{API}/table-sessions/{first['session_id']}/join", json={"custom_alias": "Party Host"})
        assert resp.status_code == 200
        assert resp.json()["alias"] == "Party Host"

        participants = client.get(f"{API}/table-sessions/{first['session_id']}/participants").json()
        assert participants["total"] == 2

    def test_full_table_is_409(self, client, make_table):
        make_table(number="12", capacity=1)
        _check_in(client)
        resp = client.post(f"{API}/table-sessions/check-in", json={"location_id": 1, "table_number": "12"})
        assert resp.status_code == 409
        assert resp.json()["kind"] == "capacity_exceeded"

    def test_leave_with_open_order_is_409(self, client, make_table, add_order):
        make_table(number="12")
        seated = _check_in(client)
        add_order(seated["session_id"], seated["participant_id"], "9.00", status="pending")
        resp = client.post(f"{API}/table-sessions/participants/{seated['participant_id']}/leave")
        assert resp.status_code == 409
        assert resp.json()["kind"] == "pending_orders_exist"

    def test_leave(self, client, make_table):
        make_table(number="12")
        seated = _check_in(client)
        resp = client.post(f"{API}/table-sessions/participants/{seated['participant_id']}/leave")
        assert resp.status_code == 200
        assert resp.json()["session_ended"] is True

    def test_end_needs_staff(self, client, make_table, staff_headers):
        make_table(number="12")
        seated = _check_in(client)
        assert client.post(f"{API}/table-sessions/{seated['session_id']}/end").status_code == 401
        resp = client.post(f"{API}/table-sessions/{seated['session_id']}/end", headers=staff_headers)
        assert resp.status_code == 200
        assert resp.json()["active"] is False

    def test_rename(self, client, make_table):
        make_table(number="12")
        seated = _check_in(client)
        resp = client.patch(f"{API}/table-sessions/participants/{seated['participant_id']}", json={"alias": "Night Owl"})
        assert resp.json()["alias"] == "Night Owl"

    def test_bill(self, client, make_table, add_order):
        make_table(number="12")
        seated = _check_in(client)
        add_order(seated["session_id"], seated["participant_id"], "18.20")
        bill = client.get(f"{API}/table-sessions/{seated['session_id']}/bill").json()
        assert bill["total_amount"] == "18.20"
        assert bill["participants"][0]["alias"] == seated["display_alias"]

    def test_request_validation(self, client):
        resp = client.post(f"{API}/table-sessions/check-in", json={"location_id": 1})
        assert resp.status_code == 422


class TestWaiterCallsApi:

    def _call(self, client, seated, priority="medium"):
        resp = client.post(f"{API}/waiter-calls", json={
            "session_id": seated["session_id"],
            "participant_id": seated["participant_id"],
            "call_type": "assistance",
            "priority": priority,
        })
        assert resp.status_code == 201, resp.text
        return resp.json()

    def test_flow(self, client, make_table, staff_headers, other_staff_headers):
        make_table(number="12")
        seated = _check_in(client)
        call = self._call(client, seated, "urgent")
        assert call["estimated_response_minutes"] == 2

        active = client.get(f"{API}/waiter-calls/active", params={"location_id": 1}, headers=staff_headers).json()
        assert [c["id"] for c in active["items"]] == [call["id"]]

        acked = client.post(f"{API}/waiter-calls/{call['id']}/acknowledge", json={}, headers=staff_headers)
        assert acked.json()["assigned_waiter_id"] == 7

        stolen = client.post(f"{API}/waiter-calls/{call['id']}/acknowledge", json={}, headers=other_staff_headers)
        assert stolen.status_code == 409

        resolved = client.post(
            f"{API}/waiter-calls/{call['id']}/resolve",
            json={"resolution": "Fixed", "satisfaction": 4},
            headers=staff_headers,
        )
        assert resolved.json()["status"] == "resolved"

        stats = client.get(f"{API}/waiter-calls/waiters/me/stats", headers=staff_headers).json()
        assert stats["resolved_today"] == 1

    def test_staff_only(self, client):
        assert client.get(f"{API}/waiter-calls/active", params={"location_id": 1}).status_code == 401
        assert client.post(f"{API}/waiter-calls/1/acknowledge", json={}).status_code == 401

    def test_waiter_presence(self, client, staff_headers):
        resp = client.put(
            f"{API}/waiter-calls/waiters/me/status",
            json={"location_id": 1, "status": "available"},
            headers=staff_headers,
        )
        assert resp.status_code == 200
        waiters = client.get(f"{API}/waiter-calls/waiters", params={"location_id": 1}, headers=staff_headers).json()
        assert waiters["items"][0]["waiter_id"] == 7

    def test_token_bound_to_other_location(self, client, make_table, staff_headers, elsewhere_staff_headers):
        make_table(number="12")
        call = self._call(client, _check_in(client))

        listed = client.get(f"{API}/waiter-calls/active", params={"location_id": 1}, headers=elsewhere_staff_headers)
        assert listed.status_code == 403
        assert listed.json()["kind"] == "forbidden"
        home = client.get(f"{API}/waiter-calls/active", params={"location_id": 2}, headers=elsewhere_staff_headers)
        assert home.status_code == 200

        acked = client.post(f"{API}/waiter-calls/{call['id']}/acknowledge", json={}, headers=elsewhere_staff_headers)
        assert acked.status_code == 403
        assert client.get(f"{API}/waiter-calls/{call['id']}").json()["status"] == "pending"

        client.post(f"{API}/waiter-calls/{call['id']}/acknowledge", json={}, headers=staff_headers)
        resolved = client.post(
            f"{API}/waiter-calls/{call['id']}/resolve",
            json={"resolution": "Fixed"},
            headers=elsewhere_staff_headers,
        )
        assert resolved.status_code == 403

    def test_presence_at_other_location_is_refused(self, client, elsewhere_staff_headers):
        resp = client.put(
            f"{API}/waiter-calls/waiters/me/status",
            json={"location_id": 1, "status": "available"},
            headers=elsewhere_staff_headers,
        )
        assert resp.status_code == 403


class TestSplitPaymentsApi:

    @pytest.fixture
    def split(self, client, seated):
        _, session_id, pids = seated
        resp = client.post(f"{API}/split-payments", json={
            "session_id": session_id,
            "total_amount": "90.00",
            "split_type": "equal",
        })
        assert resp.status_code == 201, resp.text
        return resp.json(), pids

    def test_pay_and_webhook(self, client, split):
        body, pids = split
        paid = client.post(f"{API}/split-payments/{body['id']}/pay", json={
            "participant_id": pids[0], "payment_method": "pm_card_visa",
        })
        assert paid.status_code == 200
        provider_payment_id = paid.json()["provider_payment_id"]

        event = json.dumps({"provider_payment_id": provider_payment_id, "status": "succeeded"})
        hook = client.post(f"{API}/split-payments/webhook", content=event)
        assert hook.status_code == 200
        assert hook.json() == {"received": True, "applied": True, "split_session_id": body["id"], "status": "partial"}

        fetched = client.get(f"{API}/split-payments/{body['id']}").json()
        assert fetched["contributions"][0]["status"] == "paid"

    def test_webhook_for_unknown_payment(self, client):
        event = json.dumps({"provider_payment_id": "sbx_pi_unknown", "status": "succeeded"})
        resp = client.post(f"{API}/split-payments/webhook", content=event)
        assert resp.json() == {"received": True, "applied": False}

    def test_malformed_webhook(self, client):
        resp = client.post(f"{API}/split-payments/webhook", content=b"garbage")
        assert resp.status_code == 400

    def test_decline_is_402(self, client, split):
        body, pids = split
        resp = client.post(f"{API}/split-payments/{body['id']}/pay", json={
            "participant_id": pids[0], "payment_method": "pm_card_fail",
        })
        assert resp.status_code == 402
        assert resp.json()["provider_status"] == "failed"

    def test_timeout_is_504(self, client, split):
        body, pids = split
        resp = client.post(f"{API}/split-payments/{body['id']}/pay", json={
            "participant_id": pids[0], "payment_method": "pm_timeout",
        })
        assert resp.status_code == 504
        assert resp.json()["kind"] == "provider_timeout"

    def test_tip_then_list(self, client, split):
        body, _ = split
        tipped = client.post(f"{API}/split-payments/{body['id']}/tip", json={"tip_amount": "6.00", "distribution": "equal"})
        assert tipped.json()["total_amount"] == "96.00"
        listing = client.get(f"{API}/split-payments/sessions/{body['session_id']}").json()
        assert listing["total"] == 1

    def test_confirm_needs_staff(self, client, split, staff_headers):
        body, pids = split
        paid = client.post(f"{API}/split-payments/{body['id']}/pay", json={
            "participant_id": pids[0], "payment_method": "pm_card_visa",
        }).json()
        relay = {"provider_payment_id": paid["provider_payment_id"], "status": "succeeded"}
        assert client.post(f"{API}/split-payments/confirm", json=relay).status_code == 401
        resp = client.post(f"{API}/split-payments/confirm", json=relay, headers=staff_headers)
        assert resp.status_code == 200

    def test_cancel_and_refund_permissions(self, client, split, staff_headers, manager_headers):
        body, pids = split
        refund = {"participant_id": pids[0]}
        assert client.post(f"{API}/split-payments/{body['id']}/refund", json=refund, headers=staff_headers).status_code == 403
        resp = client.post(f"{API}/split-payments/{body['id']}/refund", json=refund, headers=manager_headers)
        assert resp.status_code == 409

        resp = client.post(f"{API}/split-payments/{body['id']}/cancel", headers=staff_headers)
        assert resp.json()["status"] == "cancelled"

    def test_reconcile(self, client, split, manager_headers):
        body, pids = split
        client.post(f"{API}/split-payments/{body['id']}/pay", json={
            "participant_id": pids[0], "payment_method": "pm_card_visa",
        })
        resp = client.post(f"{API}/split-payments/reconcile", params={"older_than_minutes": 0}, headers=manager_headers)
        assert resp.json() == {"checked": 1, "updated": 1, "errors": 0}


class TestWebSocket:

    @pytest.fixture
    def realtime(self, client, session_factory, publisher, monkeypatch):
        manager = ConnectionManager(max_connections_per_topic=10)
        monkeypatch.setattr(app.state, "ws_manager", manager, raising=False)
        monkeypatch.setattr(app.state, "dispatcher", RealtimeDispatcher(session_factory, publisher), raising=False)
        return manager

    def test_diner_connects(self, client, realtime):
        with client.websocket_connect("/ws/locations/1") as ws:
            joined = ws.receive_json()
            assert joined["type"] == "joined"
            assert joined["data"]["topics"] == ["customer:1"]
            assert realtime.get_connection_count("customer:1") == 1

            ws.send_text("ping")
            assert ws.receive_json()["type"] == "pong"

            ws.send_text("{not json")
            assert ws.receive_json()["data"]["kind"] == "invalid_json"

    def test_waiter_needs_token(self, client, realtime):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/locations/1?role=waiter") as ws:
                ws.receive_json()

    def test_waiter_with_token(self, client, realtime, staff_headers):
        token = staff_headers["Authorization"].split(" ", 1)[1]
        with client.websocket_connect(f"/ws/locations/1?role=waiter&token={token}") as ws:
            joined = ws.receive_json()
            assert set(joined["data"]["topics"]) == {"waiter:1", "location:1", "user:7"}

            ws.send_json({"type": "update_waiter_status", "data": {"status": "busy"}})
            reply = ws.receive_json()
            assert reply["type"] == "waiter_status_updated"
            assert reply["data"]["status"] == "busy"

    def test_waiter_bound_elsewhere_is_disconnected(self, client, realtime, elsewhere_staff_headers):
        token = elsewhere_staff_headers["Authorization"].split(" ", 1)[1]
        with client.websocket_connect(f"/ws/locations/1?role=waiter&token={token}") as ws:
            refused = ws.receive_json()
            assert refused["type"] == "error"
            assert refused["data"]["kind"] == "forbidden"
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()
