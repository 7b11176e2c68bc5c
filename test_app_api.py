import io
import threading

import pytest

import app as app_module
from engine.document_assembler import build_static_pdf
from engine.errors import GenerationError


STUDENT = "kim@uni.ac.ke"
ADMIN = "admin@uni.ac.ke"


@pytest.fixture
def client(tmp_path, monkeypatch, report_text):
    app_module.app.config.update(
        TESTING=True,
        DATA_FOLDER=str(tmp_path / "data"),
        UPLOAD_FOLDER=str(tmp_path / "uploads"),
    )
    app_module.ACTIVE_SESSIONS.clear()
    calls = []

    async def fake_generate(experiment_code, manual_context):
        calls.append((experiment_code, manual_context))
        return report_text

    monkeypatch.setattr(app_module, "generate_lab_report", fake_generate)
    with app_module.app.test_client() as test_client:
        test_client.generation_calls = calls
        yield test_client
    app_module.ACTIVE_SESSIONS.clear()


def sign_in(client, email=STUDENT):
    response = client.post("/api/auth/session", json={"email": email})
    assert response.status_code == 200
    return response.get_json()


def generate(client, code="a-2"):
    return client.post("/api/generate-report", json={"experimentCode": code})


def test_health(client):
    assert client.get("/health").get_json() == {"status": "healthy"}


def test_sign_in_and_out(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.post("/api/auth/session", json={"email": "nope"}).status_code == 400
    body = sign_in(client)
    assert body["user"]["role"] == "student"
    assert body["usage"]["remaining"] == 3
    assert client.get("/api/auth/me").get_json()["user"]["email"] == STUDENT
    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401


def test_generate_requires_sign_in(client):
    assert generate(client).status_code == 401


def test_generate_report(client):
    sign_in(client)
    response = generate(client, " a-2 ")
    assert response.status_code == 200
    body = response.get_json()
    assert body["report"]["experimentCode"] == "A-2"
    assert body["usage"] == {"dailyCount": 1, "limit": 3, "remaining": 2}
    code, context = client.generation_calls[0]
    assert code == "A-2"
    assert "ADDITIONAL ADMIN REFERENCES" in context

    reports = client.get("/api/reports").get_json()["reports"]
    assert [r["id"] for r in reports] == [body["report"]["id"]]


@pytest.mark.parametrize("code", ["", "A2", "2-A", "A-", "A-2; drop"])
def test_generate_rejects_bad_codes(client, code):
    sign_in(client)
    assert generate(client, code).status_code == 400
    assert client.generation_calls == []


def test_daily_limit_blocks_generation(client):
    sign_in(client)
    for _ in range(3):
        assert generate(client).status_code == 200
    response = generate(client)
    assert response.status_code == 403
    assert response.get_json()["usage"]["remaining"] == 0
    assert len(client.generation_calls) == 3


def test_revoked_user_cannot_generate(client):
    sign_in(client)
    app_module.get_storage().revoke_user(STUDENT)
    assert generate(client).status_code == 403


def test_invalid_generated_report_is_not_saved(client, monkeypatch):
    async def bad_generate(experiment_code, manual_context):
        return '{"title": "half a report"}'

    monkeypatch.setattr(app_module, "generate_lab_report", bad_generate)
    sign_in(client)
    response = generate(client)
    assert response.status_code == 422
    assert client.get("/api/reports").get_json()["reports"] == []
    assert client.get("/api/auth/me").get_json()["usage"]["dailyCount"] == 0


def test_generation_failure_is_bad_gateway(client, monkeypatch):
    async def failing_generate(experiment_code, manual_context):
        raise GenerationError("Failed to generate report: upstream timeout")

    monkeypatch.setattr(app_module, "generate_lab_report", failing_generate)
    sign_in(client)
    assert generate(client).status_code == 502


def test_unknown_report_is_404(client):
    sign_in(client)
    assert client.get("/api/reports/missing").status_code == 404
    assert client.post("/api/reports/missing/open").status_code == 404


def test_live_session_flow(client):
    sign_in(client)
    report_id = generate(client).get_json()["report"]["id"]
    assert client.get("/api/session").status_code == 404

    opened = client.post(f"/api/reports/{report_id}/open").get_json()
    assert opened["reportId"] == report_id
    assert opened["analysis"]["text"].startswith("Slope = 4.0500")

    edited = client.post("/api/session/cells", json={"row": 2, "col": 1, "value": "2.83"})
    assert edited.status_code == 200
    assert edited.get_json()["analysis"]["results"]["slope"] == pytest.approx(5.05)

    bad = client.post("/api/session/cells", json={"row": 0, "col": 0, "value": "abc"})
    assert bad.status_code == 400
    assert client.post("/api/session/cells", json={"row": 7, "col": 0, "value": "1"}).status_code == 400
    assert client.post("/api/session/cells", json={"row": "0", "col": 0, "value": "1"}).status_code == 400

    added = client.post("/api/session/rows").get_json()
    assert added["rowIndex"] == 3
    assert added["tableData"][3] == [0.0, 0.0]

    toggled = client.post("/api/session/simulation/toggle").get_json()
    assert toggled["simulation"]["active"] is True
    advanced = client.post("/api/session/simulation/advance", json={"frames": 10}).get_json()
    assert advanced["frame"]["frame"] == 10
    assert client.post("/api/session/simulation/advance", json={"frames": 0}).status_code == 400

    param = client.post("/api/session/simulation/params", json={"id": "length", "value": 999})
    assert param.get_json()["simulation"]["params"]["length"] == 280
    assert client.post("/api/session/simulation/params", json={"id": "voltage", "value": 1}).status_code == 400
    assert client.post("/api/session/simulation/params", json={"id": "length", "value": "long"}).status_code == 400
    assert client.get("/api/session/simulation/frame").get_json()["frame"]["frame"] == 10

    assert client.delete("/api/session").status_code == 200
    assert client.get("/api/session").status_code == 404


def test_opening_another_report_closes_the_first(client):
    sign_in(client)
    first = generate(client).get_json()["report"]["id"]
    second = generate(client, "B-3").get_json()["report"]["id"]
    client.post(f"/api/reports/{first}/open")
    old_session = app_module.ACTIVE_SESSIONS[STUDENT]
    client.post(f"/api/reports/{second}/open")
    assert old_session.closed
    assert client.get("/api/session").get_json()["reportId"] == second


def test_concurrent_opens_leave_one_live_session(client, report_text):
    user = {"email": STUDENT}
    reports = [{"id": f"r{n}", "experimentCode": "A-2", "content": report_text} for n in range(6)]
    opened = []

    def open_report(report):
        opened.append(app_module._open_session(user, report))

    threads = [threading.Thread(target=open_report, args=(report,)) for report in reports]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    live = app_module.ACTIVE_SESSIONS[STUDENT]
    assert [s for s in opened if not s.closed] == [live]
    app_module.close_active_session(STUDENT)
    assert live.closed
    assert STUDENT not in app_module.ACTIVE_SESSIONS


def test_view_serves_live_page(client):
    sign_in(client)
    report_id = generate(client).get_json()["report"]["id"]
    response = client.get(f"/api/reports/{report_id}/view")
    assert response.status_code == 200
    assert response.mimetype == "text/html"
    page = response.get_data(as_text=True)
    assert 'const LIVE_ENDPOINT = "/api/session";' in page
    assert STUDENT in app_module.ACTIVE_SESSIONS


def test_exports(client):
    sign_in(client)
    report_id = generate(client).get_json()["report"]["id"]

    html_response = client.get(f"/api/reports/{report_id}/export/html")
    assert html_response.status_code == 200
    assert "A-2_Interactive_Report.html" in html_response.headers["Content-Disposition"]
    assert b"const LIVE_ENDPOINT = null;" in html_response.data

    pdf_response = client.get(f"/api/reports/{report_id}/export/pdf")
    assert pdf_response.status_code == 200
    assert "A-2_Report.pdf" in pdf_response.headers["Content-Disposition"]
    assert pdf_response.data.startswith(b"%PDF")

    assert client.get(f"/api/reports/{report_id}/export/docx").status_code == 400


def test_admin_endpoints_need_admin(client):
    assert client.get("/api/admin/users").status_code == 401
    sign_in(client)
    assert client.get("/api/admin/users").status_code == 403
    assert client.get("/api/admin/references").status_code == 403


def test_admin_manages_users(client):
    sign_in(client)
    sign_in(client, ADMIN)
    users = client.get("/api/admin/users").get_json()["users"]
    assert {u["email"] for u in users} == {STUDENT, ADMIN}

    limited = client.post(f"/api/admin/users/{STUDENT}/limit", json={"limit": 10}).get_json()
    assert limited["user"]["customLimit"] == 10
    assert client.post(f"/api/admin/users/{STUDENT}/limit", json={"limit": -1}).status_code == 400

    revoked = client.post(f"/api/admin/users/{STUDENT}/revoke").get_json()
    assert revoked["user"]["isRevoked"] is True
    assert client.post("/api/admin/users/ghost@uni.ac.ke/revoke").status_code == 404


def test_admin_references(client, report_model):
    sign_in(client, ADMIN)
    assert client.post("/api/admin/references", json={"text": "  "}).status_code == 400
    added = client.post("/api/admin/references", json={"text": "Experiment Z-9: Magnetism"}).get_json()
    assert added["references"] == ["Experiment Z-9: Magnetism"]

    pdf = build_static_pdf(report_model, "Z-1")
    uploaded = client.post(
        "/api/admin/references/upload",
        data={"file": (io.BytesIO(pdf), "manual.pdf")},
        content_type="multipart/form-data",
    )
    assert uploaded.status_code == 200
    references = uploaded.get_json()["references"]
    assert references[1].startswith("[manual.pdf]\n")
    assert "Simple Pendulum" in references[1]

    not_pdf = client.post(
        "/api/admin/references/upload",
        data={"file": (io.BytesIO(b"hello"), "notes.txt")},
        content_type="multipart/form-data",
    )
    assert not_pdf.status_code == 400

    assert client.delete("/api/admin/references/0").get_json()["references"] == references[1:]
    assert client.delete("/api/admin/references/5").status_code == 404

    # Admin references feed the generation context
    generate(client, "Z-1")
    assert "[manual.pdf]" in client.generation_calls[-1][1]
