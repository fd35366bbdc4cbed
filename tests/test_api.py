from wrap_concierge.gemini_client import RateLimited


class TestChatEndpoint:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_priced_turn_response_shape(self, client):
        response = client.post(
            "/api/chat",
            json={
                "session_id": "widget-1",
                "message_text": "2022 Ford F-150 how much to wrap",
                "page_url": "https://weprintwraps.com/",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["agent"] == "luigi"
        assert body["conversation_id"]
        assert body["extracted"]["vehicle"] == {"year": "2022", "make": "Ford", "model": "F-150"}
        assert body["pricing"]["status"] == "quoted"
        assert body["pricing"]["cost"] == 1318
        assert body["pricing"]["sqft"] == 250

    def test_blocked_pricing_payload(self, client):
        body = client.post("/api/chat", json={"session_id": "widget-2", "message_text": "2019 Yugo GV how much"}).json()

        assert body["pricing"] == {
            "status": "blocked",
            "sqft": None,
            "cost": None,
            "unit_rate": None,
            "reason": "model_missing",
            "fleet": None,
        }

    def test_order_status_payload(self, client):
        body = client.post("/api/chat", json={"session_id": "widget-3", "message_text": "Where is my order #12345?"}).json()

        assert body["order_status"]["kind"] == "not_found"
        assert body["order_status"]["order_number"] == "12345"

    def test_same_session_same_conversation(self, client):
        first = client.post("/api/chat", json={"session_id": "widget-4", "message_text": "hi"}).json()
        second = client.post("/api/chat", json={"session_id": "widget-4", "message_text": "hello?"}).json()

        assert first["conversation_id"] == second["conversation_id"]

    def test_missing_fields_are_400(self, client):
        response = client.post("/api/chat", json={"session_id": "widget-5"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "session_id and message_text are required"}

    def test_blank_message_is_400(self, client, gateway):
        response = client.post("/api/chat", json={"session_id": "widget-6", "message_text": "   "})

        assert response.status_code == 400
        assert gateway.calls == []

    def test_gateway_failure_is_soft(self, client, gateway):
        gateway.queue.append(RateLimited())

        response = client.post("/api/chat", json={"session_id": "widget-7", "message_text": "hi"})

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert "a lot of messages" in response.json()["message"]

    def test_unexpected_error_returns_fallback(self, client, agent, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(agent, "handle_turn", explode)

        response = client.post("/api/chat", json={"session_id": "widget-8", "message_text": "hi"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert "hello@weprintwraps.com" in body["message"]
        assert "boom" not in body["message"]


class TestTranscriptEndpoint:
    def test_transcript(self, client):
        conversation_id = client.post(
            "/api/chat", json={"session_id": "widget-9", "message_text": "hi"}
        ).json()["conversation_id"]

        response = client.get(f"/api/conversations/{conversation_id}/messages")

        assert response.status_code == 200
        body = response.json()
        assert body["stage"] == "initial"
        assert [message["direction"] for message in body["messages"]] == ["inbound", "outbound"]
        assert body["messages"][0]["content"] == "hi"

    def test_unknown_conversation(self, client):
        assert client.get("/api/conversations/nope/messages").status_code == 404
