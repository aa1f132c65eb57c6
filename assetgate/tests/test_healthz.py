import assetgate.api.health as health_api


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_ok_with_schema(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_reports_missing_tables(client, monkeypatch):
    class PartialInspector:
        def has_table(self, name):
            return name != "daily_usage_counters"

    monkeypatch.setattr(health_api, "inspect", lambda engine: PartialInspector())

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "daily_usage_counters" in resp.json()["detail"]


def test_readyz_handles_db_down(client, monkeypatch):
    from assetgate.core.errors import StorageUnavailableError

    def boom():
        raise StorageUnavailableError("db down")

    monkeypatch.setattr(health_api, "get_engine", boom)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")
