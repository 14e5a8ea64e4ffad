from __future__ import annotations

from fakes import FakeProvider, model_payload


def _use_model(backend_module, *payloads):
    provider = FakeProvider(*payloads)
    backend_module.container.orchestrator.provider = provider
    return provider


def test_conversation_without_model_key_returns_fallback(client):
    response = client.post("/conversations", json={"subject_id": "kid-1", "transcript": "She has a rash"})

    assert response.status_code == 200
    conversation = response.json()["conversation"]
    assert conversation["status"] == "failed"
    assert conversation["model"] == "fallback"
    assert "healthcare professional" in conversation["response"]["reflection"]
    assert response.json()["processing"] is None


def test_conversation_round_trip_updates_issues(client, backend_module):
    _use_model(
        backend_module,
        model_payload(
            suggestedIssueUpdates=[{"action": "create", "label": "Headaches", "status": "active", "severity": "mild"}]
        ),
    )

    response = client.post(
        "/conversations",
        json={"subject_id": "kid-1", "transcript": "Headache again", "profile_context": {"age": 9}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["conversation"]["status"] == "completed"
    assert body["processing"]["safety_score"] == 90

    fetched = client.get(f"/conversations/{body['conversation']['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["profile_context"] == {"age": 9}

    issues = client.get("/subjects/kid-1/issues").json()["items"]
    assert [issue["label"] for issue in issues] == ["Headaches"]

    history = client.get(f"/issues/{issues[0]['id']}/history").json()
    assert history["items"][0]["reason"] == "Issue created"

    events = client.get("/subjects/kid-1/events").json()["items"]
    assert events[0]["event_type"] == "conversation"


def test_vitals_feed_detection(client):
    for hours in (5.0, 6.0):
        response = client.post("/subjects/dad/vitals", json={"type": "Sleep", "value": hours})
        assert response.status_code == 200
        assert response.json()["metadata"]["type"] == "sleep"

    report = client.post("/subjects/dad/insights/detect").json()
    assert {rule["name"] for rule in report["rules"]} == {"sleep_energy", "stress_symptom", "habit_improvement"}
    assert client.get("/subjects/dad/insights").json()["items"] == []


def test_invalid_vital_timestamp_is_rejected(client):
    response = client.post("/subjects/dad/vitals", json={"type": "sleep", "value": 7, "timestamp": "yesterday"})

    assert response.status_code == 400


def test_unknown_resources_return_404(client):
    assert client.get("/conversations/missing").status_code == 404
    assert client.get("/issues/missing/history").status_code == 404


def test_invalid_subject_id_is_rejected(client):
    response = client.post("/conversations", json={"subject_id": "bad id!", "transcript": "hello"})

    assert response.status_code == 400
