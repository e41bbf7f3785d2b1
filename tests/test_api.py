import base64

import pytest

import app as app_module
from verification.errors import RemoteFetchError
from verification.ocr import OcrAdapter, VisionEngine


def generate(client, **overrides):
    payload = {"first_name": "Jane", "last_name": "Doe", "email": "jane@example.com"}
    payload.update(overrides)
    return client.post("/admin/generate-link", json=payload)


def upload(client, token, role, content, filename="capture.jpg", content_type="image/jpeg"):
    return client.post(
        "/kyc/upload",
        data={"token": token, "fileType": role},
        files={"file": (filename, content, content_type)},
    )


@pytest.fixture
def scripted_ocr(monkeypatch, ocr_adapter):
    monkeypatch.setattr(app_module, "_ocr_adapter", ocr_adapter)
    return ocr_adapter


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "healthy", "service": "kyc-intake"}


# ------------------------
# Operator API
# ------------------------
def test_generate_link(client):
    res = generate(client)
    assert res.status_code == 200
    body = res.json()
    assert body["link"].endswith(f"/kyc/verify?token={body['token']}")
    assert body["kyc_request_id"] > 0


def test_generate_link_requires_all_fields(client):
    res = generate(client, email="   ")
    assert res.status_code == 400
    assert res.json() == {"error": "All fields are required"}


def test_list_requests(client):
    first = generate(client).json()
    generate(client, first_name="John", email="john@example.com")
    client.get("/kyc/validate-token", params={"token": first["token"]})

    body = client.get("/admin/requests").json()
    assert [r["first_name"] for r in body["requests"]] == ["John", "Jane"]
    assert body["stats"] == {"total": 2, "pending": 1, "in_progress": 1, "completed": 0, "expired": 0}


# ------------------------
# Token validation
# ------------------------
def test_validate_token(client):
    token = generate(client).json()["token"]
    res = client.get("/kyc/validate-token", params={"token": token})
    assert res.status_code == 200
    assert res.json()["status"] == "in_progress"
    assert res.json()["email"] == "jane@example.com"


def test_validate_token_errors(client):
    assert client.get("/kyc/validate-token").status_code == 400
    res = client.get("/kyc/validate-token", params={"token": "nope"})
    assert res.status_code == 404
    assert res.json() == {"error": "Invalid or expired link"}


# ------------------------
# Uploads
# ------------------------
def test_upload_stores_artifact(client, make_image):
    issued = generate(client).json()
    content = make_image()
    res = upload(client, issued["token"], "front", content)
    assert res.status_code == 200
    body = res.json()
    assert body["path"].startswith(f"{issued['kyc_request_id']}/front_")
    assert body["url"].endswith(body["path"])

    served = client.get(f"/files/{body['path']}")
    assert served.status_code == 200
    assert served.content == content


def test_upload_extension_from_content_type(client, make_image):
    token = generate(client).json()["token"]
    res = upload(client, token, "selfie", make_image(fmt="PNG"), filename="blob", content_type="image/png")
    assert res.json()["path"].endswith(".png")


def test_upload_extension_follows_stored_bytes(client, make_image):
    token = generate(client).json()["token"]
    res = upload(client, token, "front", make_image(), filename="scan.png", content_type="image/jpeg")
    assert res.json()["path"].endswith(".jpg")


def test_upload_rejects_bad_requests(client, make_image):
    token = generate(client).json()["token"]
    assert upload(client, token, "passport", make_image()).status_code == 400
    assert upload(client, "unknown", "front", make_image()).status_code == 404
    assert client.post("/kyc/upload", data={"token": token, "fileType": "front"}).status_code == 400


# ------------------------
# OCR
# ------------------------
def test_ocr_from_base64(client, scripted_ocr, scripted_engine, make_image):
    encoded = base64.b64encode(make_image(700, 350)).decode()
    res = client.post(
        "/kyc/ocr",
        json={"image_base64": f"data:image/jpeg;base64,{encoded}", "document_type": "id_card"},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["fields"]["name"] == "JANE DOE"
    assert body["fields"]["document_number"] == "AB1234567"
    assert body["engine"] == "scripted"
    # The engine sees the OCR derivation, not the original
    image, document_type = scripted_engine.calls[0]
    assert document_type == "id_card"
    assert image != base64.b64decode(encoded)


def test_ocr_requires_image(client, scripted_ocr):
    res = client.post("/kyc/ocr", json={"document_type": "id_card"})
    assert res.status_code == 400
    assert res.json() == {"error": "No image provided"}


def test_ocr_rejects_invalid_input(client, scripted_ocr):
    assert client.post("/kyc/ocr", json={"image_base64": "!!not base64!!"}).status_code == 400
    assert client.post("/kyc/ocr", json={"image_url": "ftp://example.com/a.jpg"}).status_code == 400


def test_ocr_remote_fetch_failure(client, scripted_ocr, monkeypatch):
    def unreachable(url):
        raise RemoteFetchError(f"Failed to download image from {url}")

    monkeypatch.setattr(app_module, "download_image_from_url", unreachable)
    res = client.post("/kyc/ocr", json={"image_url": "https://example.com/id.jpg"})
    assert res.status_code == 502


def test_ocr_engine_failure_is_not_an_error(client, scripted_ocr, scripted_engine, make_image):
    scripted_engine.error = RuntimeError("engine crashed")
    encoded = base64.b64encode(make_image()).decode()
    res = client.post("/kyc/ocr", json={"image_base64": encoded})
    assert res.status_code == 200
    assert res.json()["advisory"] == "OCR failed. Please fill in the fields manually."



def test_ocr_vision_backend_without_api_key(client, monkeypatch, make_image):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(app_module.settings, "OPENAI_API_KEY", None)
    monkeypatch.setattr(app_module, "_ocr_adapter", OcrAdapter(VisionEngine()))
    encoded = base64.b64encode(make_image()).decode()
    res = client.post("/kyc/ocr", json={"image_base64": encoded})
    assert res.status_code == 200
    assert res.json()["engine"] == "openai"
    assert res.json()["advisory"] == "OCR failed. Please fill in the fields manually."

# ------------------------
# Submission
# ------------------------
def submission(request_token, **overrides):
    payload = {
        "document_front_url": "http://localhost:8000/files/1/front_1.jpg",
        "document_back_url": "http://localhost:8000/files/1/back_1.jpg",
        "selfie_url": "http://localhost:8000/files/1/selfie_1.jpg",
        "ocr_data_json": {"name": "JANE DOE", "dob": "15/03/1990", "document_number": "AB1234567", "raw_text": ""},
        "document_type": "id_card",
        "country": "Kenya",
    }
    payload.update({"token": request_token, **overrides})
    return payload


@pytest.mark.parametrize("overrides,error", [
    ({"token": ""}, "Missing token"),
    ({"document_front_url": None}, "Missing document image URL"),
    ({"selfie_url": ""}, "Missing selfie URL"),
    ({"document_type": "library_card"}, "Unknown document type: library_card"),
])
def test_submit_validation(client, overrides, error):
    token = generate(client).json()["token"]
    res = client.post("/kyc/submit", json=submission(token, **overrides))
    assert res.status_code == 400
    assert res.json() == {"error": error}


def test_submit(client, record_of, status_of):
    issued = generate(client).json()
    client.get("/kyc/validate-token", params={"token": issued["token"]})

    res = client.post("/kyc/submit", json=submission(issued["token"]))
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["status_updated"] is True

    record = record_of(issued["kyc_request_id"])
    assert record.id == body["record_id"]
    assert record.verification_status == "pending"
    assert record.face_match_score is None
    assert record.ocr_data_json["document_number"] == "AB1234567"
    assert status_of(issued["token"]) == "completed"

    again = client.post("/kyc/submit", json=submission(issued["token"]))
    assert again.status_code == 409
    res = client.get("/kyc/validate-token", params={"token": issued["token"]})
    assert res.status_code == 409

    overview = client.get("/admin/requests").json()
    assert overview["requests"][0]["record"]["id"] == body["record_id"]
    assert overview["stats"]["completed"] == 1


def test_submit_retry_after_status_update_failure(client, monkeypatch, status_of):
    issued = generate(client).json()
    monkeypatch.setattr(app_module.guard, "finalize", lambda request_id: False)

    first = client.post("/kyc/submit", json=submission(issued["token"]))
    assert first.status_code == 200
    assert first.json()["status_updated"] is False
    assert status_of(issued["token"]) == "pending"

    monkeypatch.undo()
    retry = client.post("/kyc/submit", json=submission(issued["token"]))
    assert retry.status_code == 200
    assert retry.json()["record_id"] == first.json()["record_id"]
    assert retry.json()["status_updated"] is True
    assert status_of(issued["token"]) == "completed"
