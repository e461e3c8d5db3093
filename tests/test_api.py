"""
HTTP API tests
==============
Drives the FastAPI app through ``httpx.AsyncClient`` with the database
session dependency pointed at the in-memory test database.
"""

import json

import httpx
import pytest

from likeme.api import app, get_pagarme_client
from likeme.clients.pagarme import PagarmeClient
from likeme.config import settings
from likeme.db import get_session
from likeme.services.importer import AnamnesisImporter


@pytest.fixture
async def client(session_maker):
    async def override_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
async def seeded(make_question):
    focus = await make_question("mind_focus", [("low", "1"), ("high", "3")], order=1)
    sleep = await make_question("habits_sono_qualidade", [("bad", "0"), ("good", "4")], order=2)
    notes = await make_question("general_notes", type="text", order=3)
    return {"focus": focus, "sleep": sleep, "notes": notes}


class TestMeta:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": settings.version}

    async def test_root_lists_endpoints(self, client):
        body = (await client.get("/")).json()
        assert body["endpoints"]["user_scores"] == "/anamnesis/scores/user/{user_id}"


class TestQuestions:
    async def test_list_questions(self, client, seeded):
        response = await client.get("/anamnesis/questions", params={"locale": "en-US"})

        assert response.status_code == 200
        body = response.json()
        assert [q["key"] for q in body] == ["mind_focus", "habits_sono_qualidade", "general_notes"]
        assert body[0]["text"] == "Question mind_focus"
        assert body[0]["answer_type"] == "single_choice"
        assert body[0]["answer_options"][1] == {
            "id": seeded["focus"].answer_options[1].id,
            "key": "high",
            "order": 1,
            "text": "high (en-US)",
        }

    async def test_locale_is_required(self, client, seeded):
        response = await client.get("/anamnesis/questions")
        assert response.status_code == 422

    async def test_key_prefix(self, client, seeded):
        body = (await client.get("/anamnesis/questions", params={"locale": "pt-BR", "key_prefix": "habits"})).json()
        assert [q["key"] for q in body] == ["habits_sono_qualidade"]

    async def test_prefixes(self, client, seeded):
        body = (await client.get("/anamnesis/questions/prefixes")).json()

        assert body["total_questions"] == 3
        assert {p["prefix"] for p in body["prefixes"]} == {"mind", "habits", "general"}

    async def test_question_by_key(self, client, seeded):
        response = await client.get("/anamnesis/questions/mind_focus", params={"locale": "pt-BR"})

        assert response.status_code == 200
        assert response.json()["text"] == "Pergunta mind_focus"

    async def test_unknown_question_is_404(self, client, seeded):
        response = await client.get("/anamnesis/questions/missing", params={"locale": "pt-BR"})

        assert response.status_code == 404
        assert response.json()["error"] == "question_not_found"

    async def test_complete(self, client, seeded):
        body = (await client.get("/anamnesis/complete", params={"locale": "pt-BR"})).json()

        sleep = next(q for q in body if q["key"] == "habits_sono_qualidade")
        assert [o["value"] for o in sleep["answer_options"]] == ["0", "4"]
        assert sleep["texts"] == [{"locale": "pt-BR", "value": "Pergunta habits_sono_qualidade"}]


class TestAnswers:
    async def test_upsert_and_read_back(self, client, seeded):
        focus = seeded["focus"]
        payload = {
            "user_id": "u1",
            "question_concept_id": focus.id,
            "answer_option_id": focus.answer_options[0].id,
        }
        first = await client.post("/anamnesis/answers", json=payload)
        payload["answer_option_id"] = focus.answer_options[1].id
        second = await client.post("/anamnesis/answers", json=payload)

        assert first.status_code == 200
        assert second.json()["id"] == first.json()["id"]

        answers = (await client.get("/anamnesis/answers/user/u1", params={"locale": "en-US"})).json()
        assert len(answers) == 1
        assert answers[0]["answer_option_key"] == "high"
        assert answers[0]["answer_option_text"] == "high (en-US)"

        single = await client.get(f"/anamnesis/answers/user/u1/question/{focus.id}")
        assert single.status_code == 200
        assert single.json()["question_key"] == "mind_focus"

    async def test_validation_error_is_400(self, client, seeded):
        response = await client.post(
            "/anamnesis/answers",
            json={"user_id": "u1", "question_concept_id": seeded["notes"].id},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "answer_validation_error"

    async def test_unknown_question_is_404(self, client, seeded):
        response = await client.post(
            "/anamnesis/answers",
            json={"user_id": "u1", "question_concept_id": "missing", "answer_text": "x"},
        )
        assert response.status_code == 404

    async def test_missing_answer_is_404(self, client, seeded):
        response = await client.get(f"/anamnesis/answers/user/u1/question/{seeded['focus'].id}")
        assert response.status_code == 404


class TestScores:
    async def test_scores_and_markers(self, client, seeded, answer):
        await answer("u1", seeded["focus"], "high")
        await answer("u1", seeded["sleep"], "bad")

        scores = (await client.get("/anamnesis/scores/user/u1")).json()
        assert scores["mental"]["percentage"] == 100
        assert scores["physical"]["percentage"] == 0
        assert scores["physical"]["answered_questions"] == 1

        markers = (await client.get("/anamnesis/markers/user/u1")).json()
        assert len(markers["markers"]) == 10
        sleep = next(m for m in markers["markers"] if m["name"] == "sleep")
        assert sleep["max_score"] == 4


class TestImport:
    async def test_full_success_is_201(self, client):
        content = "key;type;text_pt-BR;options\nmind_calm;single_choice;Calmo?;a:1|b:2\n"
        response = await client.post(
            "/anamnesis/import/csv",
            files={"file": ("questions.csv", content.encode("utf-8"), "text/csv")},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["created"][0]["key"] == "mind_calm"

    async def test_partial_failure_is_207(self, client, monkeypatch):
        original = AnamnesisImporter._process_row

        async def flaky(self, row):
            if row.key == "mind_b":
                raise ValueError("bad row")
            return await original(self, row)

        monkeypatch.setattr(AnamnesisImporter, "_process_row", flaky)
        content = "key;type;options\nmind_a;single_choice;a:1\nmind_b;single_choice;a:1\n"
        response = await client.post(
            "/anamnesis/import/csv",
            files={"file": ("questions.csv", content.encode("utf-8"), "text/csv")},
        )

        assert response.status_code == 207
        body = response.json()
        assert body["success"] is False
        assert body["success_count"] == 1
        assert body["errors"][0] == {
            "row": 2,
            "data": {"key": "mind_b", "type": "single_choice", "options": "a:1"},
            "error": "bad row",
        }

    async def test_non_csv_rejected(self, client):
        response = await client.post(
            "/anamnesis/import/csv",
            files={"file": ("questions.pdf", b"%PDF", "application/pdf")},
        )
        assert response.status_code == 400

    async def test_oversized_file_rejected(self, client, monkeypatch):
        monkeypatch.setattr(settings.importer, "max_file_size_bytes", 1024)
        response = await client.post(
            "/anamnesis/import/csv",
            files={"file": ("big.csv", b"key\n" + b"x" * 2048, "text/csv")},
        )
        assert response.status_code == 400

    async def test_unreadable_file(self, client):
        response = await client.post(
            "/anamnesis/import/csv",
            files={"file": ("bad.csv", "key\nação\n".encode("latin-1"), "text/csv")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "import_error"

    async def test_template_download(self, client):
        response = await client.get("/anamnesis/import/template")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.content.startswith(b"\xef\xbb\xbf")


class TestPayments:
    @pytest.fixture
    def split_enabled(self, monkeypatch):
        monkeypatch.setattr(settings.pagarme, "split_enabled", True)
        monkeypatch.setattr(settings.pagarme, "split_recipient_id", "rp_1")
        monkeypatch.setattr(settings.pagarme, "split_percentage", 20.0)

    async def test_split_preview(self, client, split_enabled):
        body = (await client.post("/payments/split/preview", json={"amount_cents": 5000})).json()

        assert body["split_applied"] is True
        assert body["rules"][0]["amount"] == 20.0
        assert body["rules"][0]["type"] == "percentage"

    async def test_split_preview_disabled(self, client, monkeypatch):
        monkeypatch.setattr(settings.pagarme, "split_enabled", False)
        body = (await client.post("/payments/split/preview", json={"amount_cents": 5000})).json()
        assert body == {"amount_cents": 5000, "split_applied": False, "rules": []}

    async def test_create_order_attaches_split(self, client, split_enabled):
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={"id": "or_9", "status": "pending"})

        app.dependency_overrides[get_pagarme_client] = lambda: PagarmeClient(
            api_key="sk_test_key_for_tests_only",
            transport=httpx.MockTransport(handler),
            backoff_multiplier=0,
        )
        response = await client.post(
            "/payments/orders",
            json={
                "customer": {"name": "Ana"},
                "items": [{"amount": 2500, "quantity": 2, "description": "Kit"}],
                "payments": [{"payment_method": "pix"}],
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["order_id"] == "or_9"
        assert body["split_applied"] is True
        assert sent["payments"][0]["split"][0]["recipient_id"] == "rp_1"

    async def test_gateway_error_is_502(self, client):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"message": "invalid card"})

        app.dependency_overrides[get_pagarme_client] = lambda: PagarmeClient(
            api_key="sk_test_key_for_tests_only",
            transport=httpx.MockTransport(handler),
        )
        response = await client.post(
            "/payments/orders",
            json={"customer": {}, "items": [{"amount": 1}], "payments": [{"payment_method": "pix"}]},
        )

        assert response.status_code == 502
        assert response.json()["error"] == "payment_error"

    async def test_missing_key_is_502(self, client, monkeypatch):
        monkeypatch.setattr(settings.pagarme, "api_key", None)
        response = await client.post(
            "/payments/orders",
            json={"customer": {}, "items": [{"amount": 1}], "payments": [{}]},
        )
        assert response.status_code == 502

    @pytest.mark.parametrize(
        "item",
        [{"amount": "abc", "quantity": 1}, {"amount": None}, {"amount": 100, "quantity": 0}, {"amount": -5}],
    )
    async def test_invalid_order_item_is_422(self, client, item):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("gateway must not be called")

        app.dependency_overrides[get_pagarme_client] = lambda: PagarmeClient(
            api_key="sk_test_key_for_tests_only",
            transport=httpx.MockTransport(handler),
        )
        response = await client.post(
            "/payments/orders",
            json={"customer": {}, "items": [item], "payments": [{"payment_method": "pix"}]},
        )

        assert response.status_code == 422
