import base64
import io

import pytest
from PIL import Image

import app as app_module
import cartoon_core
import db
from conftest import fake_client, gemini_response, inline_part, make_png


@pytest.fixture
def make_client(monkeypatch, isolated_paths):
    monkeypatch.setattr(app_module, "UPLOADS_DIR", isolated_paths / "uploads")
    monkeypatch.setattr(app_module, "OUTPUTS_DIR", isolated_paths / "outputs")
    monkeypatch.setenv("FRONTEND_URL", "http://kiosk.local/")

    def _make(gemini):
        monkeypatch.setitem(app_module.app.config, "GEMINI_CLIENT", gemini)
        return app_module.app.test_client()

    return _make


@pytest.fixture
def client(make_client):
    return make_client(fake_client(error=PermissionError("API key not valid")))


def _process_body(**overrides):
    body = {
        "imageData": "data:image/png;base64," + base64.b64encode(make_png((1000, 1000))).decode(),
        "userId": 1,
        "style": "cartoon2",
    }
    body.update(overrides)
    return body


def test_create_user(client):
    resp = client.post("/api/users", json={"name": "Ada", "mobile": "555"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    assert db.get_user(data["userId"])["name"] == "Ada"

    assert client.get(f"/api/users/{data['userId']}").get_json()["mobile"] == "555"
    assert client.get("/api/users/999").status_code == 404


def test_create_user_requires_fields(client):
    assert client.post("/api/users", json={"name": "Ada"}).status_code == 400


@pytest.mark.parametrize("missing", ["imageData", "userId", "style"])
def test_process_requires_parameters(client, missing):
    body = _process_body()
    del body[missing]
    resp = client.post("/api/images/process", json=body)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Missing required parameters"


def test_process_rejects_bad_base64(client):
    resp = client.post("/api/images/process", json=_process_body(imageData="abc"))
    assert resp.status_code == 400


def test_process_remote_success(make_client, isolated_paths):
    remote = make_png((600, 600), color=(0, 0, 255))
    client = make_client(fake_client(response=gemini_response(inline_part(remote))))

    resp = client.post("/api/images/process", json=_process_body(style="cartoon1"))
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    assert data["outcome"] == cartoon_core.OUTCOME_REMOTE
    assert data["processedImage"].startswith("outputs/")

    filename = data["processedImage"].split("/", 1)[1]
    out = Image.open(isolated_paths / "outputs" / filename)
    assert out.size == (720, 1280)
    assert (isolated_paths / "uploads" / filename).exists()

    qr = Image.open(io.BytesIO(base64.b64decode(data["qrCode"])))
    assert qr.format == "PNG"

    row = db.get_image(data["imageId"])
    assert row["style"] == "cartoon1"
    assert row["outcome"] == cartoon_core.OUTCOME_REMOTE
    assert row["original_image"] == f"uploads/{filename}"


def test_process_local_fallback(client, isolated_paths):
    resp = client.post("/api/images/process", json=_process_body())
    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == cartoon_core.OUTCOME_LOCAL

    stats = client.get("/api/stats").get_json()
    assert stats["outcomes"] == {cartoon_core.OUTCOME_LOCAL: 1}
    assert stats["stage_failures"] == {"remote": 1}


def test_process_pipeline_failure(client):
    garbage = base64.b64encode(b"not an image").decode()
    resp = client.post("/api/images/process", json=_process_body(imageData=garbage))
    assert resp.status_code == 500
    data = resp.get_json()
    assert data["error"] == "Image processing failed"
    assert "All image processing methods failed" in data["details"]
    assert client.get("/api/stats").get_json()["outcomes"] == {"failed": 1}


def test_get_and_download(client):
    data = client.post("/api/images/process", json=_process_body()).get_json()
    filename = data["processedImage"].split("/", 1)[1]

    resp = client.get(f"/api/images/{filename}")
    assert resp.status_code == 200
    assert resp.mimetype == "image/png"

    resp = client.get(f"/api/images/download/{filename}")
    assert resp.status_code == 200
    assert f"cartoonized-{filename}" in resp.headers["Content-Disposition"]

    assert client.get(f"/outputs/{filename}").status_code == 200


def test_missing_image_404(client):
    assert client.get("/api/images/nope.png").status_code == 404
    assert client.get("/api/images/download/nope.png").status_code == 404


def test_upload(client, isolated_paths):
    resp = client.post(
        "/api/images/upload",
        data={"userId": "7", "image": (io.BytesIO(make_png((20, 20))), "Me Selfie.PNG")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["imagePath"].startswith("uploads/")
    assert data["imagePath"].endswith(".png")
    assert (isolated_paths / data["imagePath"]).exists()

    rows = client.get("/api/users/7/images").get_json()
    assert [r["id"] for r in rows] == [data["imageId"]]


def test_upload_without_file(client):
    resp = client.post("/api/images/upload", data={"userId": "1"}, content_type="multipart/form-data")
    assert resp.status_code == 400


def test_styles(client):
    data = client.get("/api/styles").get_json()
    assert [s["id"] for s in data["styles"]] == ["cartoon1", "cartoon2", "cartoon3"]
    assert data["model"] == "test-model"
    assert data["remote_available"] is True


def test_get_user(client):
    user_id = db.create_user("Grace", "777")
    resp = client.get(f"/api/users/{user_id}")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["id"] == user_id
    assert data["name"] == "Grace"


def test_get_unknown_user_404(client):
    resp = client.get("/api/users/4242")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Not found"


def test_user_images_newest_first(client):
    user_id = db.create_user("Ada", "555")
    first = client.post("/api/images/process", json=_process_body(userId=user_id)).get_json()
    second = client.post(
        "/api/images/process", json=_process_body(userId=user_id, style="cartoon3")
    ).get_json()

    rows = client.get(f"/api/users/{user_id}/images").get_json()
    assert [r["id"] for r in rows] == [second["imageId"], first["imageId"]]
    assert [r["style"] for r in rows] == ["cartoon3", "cartoon2"]
    assert client.get("/api/users/4242/images").get_json() == []


def test_stats_after_process(client):
    assert client.get("/api/stats").get_json()["run_count"] == 0
    client.post("/api/images/process", json=_process_body(style="cartoon1"))

    stats = client.get("/api/stats").get_json()
    assert stats["run_count"] == 1
    assert stats["outcomes"] == {cartoon_core.OUTCOME_LOCAL: 1}
    assert stats["styles"] == {"cartoon1": 1}


def test_process_watermark_failure(client, monkeypatch):
    def broken_watermark(input_path, output_path):
        raise OSError("disk full")

    monkeypatch.setattr(app_module.watermark, "apply_watermark", broken_watermark)
    resp = client.post("/api/images/process", json=_process_body())
    assert resp.status_code == 500
    data = resp.get_json()
    assert data["error"] == "Watermark failed"
    assert data["details"] == "disk full"


@pytest.mark.parametrize("error", [
    OSError("read-only file system"),
    UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
    KeyError("run_count"),
])
def test_process_survives_outcome_log_errors(client, monkeypatch, error):
    def broken_log(*args, **kwargs):
        raise error

    monkeypatch.setattr(app_module.outcomes, "append_outcome_log", broken_log)
    resp = client.post("/api/images/process", json=_process_body())
    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == cartoon_core.OUTCOME_LOCAL
