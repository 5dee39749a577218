from __future__ import annotations

from relay.settings import Settings


def _batch(make_event, payloads, origin="lab-01", n=1, **kw):
    return {
        "origin_id": origin,
        "cursor": kw.get("cursor"),
        "events": [make_event("CaseUpserted", payloads.case(f"case-{i}"), as_wire=True) for i in range(n)],
    }


class TestSyncEvents:
    def test_accepts_then_reports_duplicates(self, client, make_event, payloads) -> None:
        body = _batch(make_event, payloads, n=2, cursor="c-1")
        first = client.post("/sync/v1/events", json=body)
        assert first.status_code == 200
        assert first.json() == {"accepted": 2, "duplicated": 0, "rejected": [], "last_cursor": "c-1"}

        second = client.post("/sync/v1/events", json=body)
        assert second.json()["accepted"] == 0
        assert second.json()["duplicated"] == 2

    def test_cursor_omitted_when_absent(self, client, make_event, payloads) -> None:
        resp = client.post("/sync/v1/events", json=_batch(make_event, payloads))
        assert "last_cursor" not in resp.json()

    def test_legacy_edge_id_field(self, client, make_event, payloads) -> None:
        body = _batch(make_event, payloads)
        body["edge_id"] = body.pop("origin_id")
        assert client.post("/sync/v1/events", json=body).json()["accepted"] == 1

    def test_origin_mismatch_is_in_band(self, client, make_event, payloads) -> None:
        body = _batch(make_event, payloads)
        stray = make_event("CaseUpserted", payloads.case("case-x"), origin_id="lab-99", as_wire=True)
        body["events"].append(stray)
        resp = client.post("/sync/v1/events", json=body)
        assert resp.status_code == 200
        data = resp.json()
        assert data["accepted"] == 1
        assert data["rejected"][0]["event_id"] == stray["event_id"]

    def test_malformed_body_is_400(self, client) -> None:
        resp = client.post("/sync/v1/events", json={"origin_id": "lab-01", "events": []})
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["error"] == "Invalid request body"
        assert detail["details"]

    def test_bad_event_fails_whole_request(self, client, make_event, payloads) -> None:
        body = _batch(make_event, payloads)
        body["events"][0]["occurred_at"] = "yesterday"
        assert client.post("/sync/v1/events", json=body).status_code == 400

    def test_batch_limit_from_settings(self, client, make_event, payloads, monkeypatch) -> None:
        monkeypatch.setattr("relay.api.routes_sync.settings", Settings(SYNC_MAX_EVENTS=1))
        resp = client.post("/sync/v1/events", json=_batch(make_event, payloads, n=2))
        assert resp.status_code == 400

    def test_storage_failure_is_500(self, client, make_event, payloads, monkeypatch) -> None:
        def down(rows):
            raise ConnectionError("database unavailable")

        monkeypatch.setattr(client.app.state.event_log, "append_batch", down)
        resp = client.post("/sync/v1/events", json=_batch(make_event, payloads))
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Internal server error during event ingestion"

    def test_projection_reaches_read_api(self, client, make_event, payloads) -> None:
        client.post("/sync/v1/events", json=_batch(make_event, payloads))
        assert client.get("/api/v1/cases/case-0").status_code == 200
