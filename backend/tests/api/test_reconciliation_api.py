from datetime import date


def test_reconciliation_run_endpoints(api_client, auth_headers, admin_credentials):
    started = api_client.post("/reconciliation/runs", json={"apply": True}, headers=auth_headers)
    assert started.status_code == 201, started.text
    body = started.json()
    assert body["state"] == "reported"
    assert body["dry_run"] is False
    assert body["errors"] == 0
    run_id = body["run_id"]

    run = api_client.get(f"/reconciliation/runs/{run_id}", headers=auth_headers)
    assert run.status_code == 200
    assert run.json()["triggered_by"] == f"admin:{admin_credentials[0]}"

    runs = api_client.get("/reconciliation/runs", headers=auth_headers)
    assert run_id in [item["id"] for item in runs.json()]

    findings = api_client.get(f"/reconciliation/runs/{run_id}/findings", headers=auth_headers)
    assert findings.status_code == 200
    assert findings.json() == []

    missing = api_client.get("/reconciliation/runs/999999", headers=auth_headers)
    assert missing.status_code == 404


def test_orphan_finding_listed_and_ledger_drained(api_client, auth_headers, ledger_override):
    ledger_override.put("resv-orphan", "P77", date.today(), "10:00", "pending")

    started = api_client.post("/reconciliation/runs", headers=auth_headers)
    assert started.status_code == 201, started.text
    kinds = [(f["divergence_kind"], f["action_taken"]) for f in started.json()["findings"]]
    assert ("ledger_orphan", "flagged_for_review") in kinds

    listed = api_client.get(
        "/reconciliation/findings", params={"status": "open", "kind": "ledger_orphan"}, headers=auth_headers
    )
    assert listed.status_code == 200
    assert [row["entity_id"] for row in listed.json()] == ["resv-orphan"]


def test_dry_run_via_api(api_client, auth_headers):
    res = api_client.post("/reconciliation/runs", json={"apply": False}, headers=auth_headers)
    assert res.status_code == 201
    assert res.json()["dry_run"] is True
    assert res.json()["summary"]["findings"] == []
