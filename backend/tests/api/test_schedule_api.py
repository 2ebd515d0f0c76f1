WEEKDAYS = [
    {"day_of_week": day, "start_time": "09:00", "end_time": "17:30", "slot_minutes": 15} for day in range(5)
]
WEEKEND = [{"day_of_week": day, "is_closed": True} for day in (5, 6)]


def test_schedule_round_trips_and_reports_stranded_bookings(api_client, auth_headers):
    patient = api_client.post("/patients", json={"name": "Hanako Sato"}, headers=auth_headers).json()
    booking = api_client.post(
        "/bookings",
        json={"patient_id": patient["patient_id"], "date": "2026-02-20", "time": "10:00"},
        headers=auth_headers,
    ).json()

    res = api_client.put(
        "/settings/schedule",
        json={
            "hours": WEEKDAYS + WEEKEND,
            "closures": [{"start_date": "2026-02-20", "end_date": "2026-02-20", "reason": "Staff training"}],
        },
        headers=auth_headers,
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["stranded_reserve_ids"] == [booking["reserve_id"]]
    assert body["closures"][0]["reason"] == "Staff training"

    current = api_client.get("/settings/schedule", headers=auth_headers).json()
    assert len(current["hours"]) == 7
    assert current["stranded_reserve_ids"] == []

    rejected = api_client.post(
        "/bookings",
        json={"patient_id": patient["patient_id"], "date": "2026-02-20", "time": "11:00"},
        headers=auth_headers,
    )
    assert rejected.status_code in {409, 422}


def test_schedule_update_validates_rows(api_client, auth_headers):
    backwards = [{"day_of_week": 0, "start_time": "17:00", "end_time": "09:00"}]
    res = api_client.put("/settings/schedule", json={"hours": backwards}, headers=auth_headers)
    assert res.status_code == 422

    twice = [{"day_of_week": 1, "is_closed": True}, {"day_of_week": 1, "is_closed": True}]
    res = api_client.put("/settings/schedule", json={"hours": twice}, headers=auth_headers)
    assert res.status_code == 422
